"""
fleet_config.py — host descriptors, container specs, and config loading.

The deployment document is YAML (or the legacy TOML layout when the file
ends in .toml). It is validated with pydantic and turned into frozen
dataclasses that stay read-only for the lifetime of a run.
"""

import os
import re
import tomllib
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

LOCAL_ADDRESS = "localhost"
DEFAULT_CONFIG_PATH = Path(__file__).parent / "maestro.yaml"
EXAMPLE_CONFIG_PATH = Path(__file__).parent / "maestro.example.yaml"
DEFAULT_DATABASE_URL = "sqlite:///maestro.db"
DEFAULT_INSTALL_COMMAND = (
    "curl -fsSL https://get.docker.com -o /tmp/get-docker.sh && sudo sh /tmp/get-docker.sh"
)
DEFAULT_STEP_TIMEOUT = 600
DEFAULT_MAX_CONCURRENCY = 8

# Docker's own container-name rule.
_CONTAINER_NAME_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.-]*$")


class MaestroError(Exception):
    """Base class for every error Maestro raises on purpose."""


class ConfigError(MaestroError):
    """The deployment document is missing, unreadable, or invalid."""


# ---------------------------------------------------------------------------
# Runtime types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Password:
    secret: str = field(repr=False)


@dataclass(frozen=True)
class KeyFile:
    path: Path


Credential = Password | KeyFile


@dataclass(frozen=True)
class HostDescriptor:
    address: str
    username: str = ""
    auth: Credential | None = None
    ssh_port: int | None = None

    @property
    def is_local(self) -> bool:
        return self.address == LOCAL_ADDRESS

    @property
    def destination(self) -> str:
        return f"{self.username}@{self.address}" if self.username else self.address


@dataclass(frozen=True)
class ContainerSpec:
    image_name: str
    container_name: str
    instance_count: int = 1

    def instance_name(self, index: int) -> str:
        return f"{self.container_name}-{index}"


class ParallelismPolicy(Enum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


@dataclass(frozen=True)
class MaestroConfig:
    hosts: tuple[HostDescriptor, ...]
    containers: tuple[ContainerSpec, ...]
    policy: ParallelismPolicy = ParallelismPolicy.SEQUENTIAL
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    retries: int = 0
    step_timeout: int = DEFAULT_STEP_TIMEOUT
    install_command: str = DEFAULT_INSTALL_COMMAND
    database_url: str = DEFAULT_DATABASE_URL
    source: Path | None = None

    def host(self, address: str) -> HostDescriptor:
        for host in self.hosts:
            if host.address == address:
                return host
        available = ", ".join(h.address for h in self.hosts)
        raise ValueError(f"Unknown host '{address}'. Available hosts: {available}")


# ---------------------------------------------------------------------------
# Document schema
# ---------------------------------------------------------------------------

class _AuthSchema(BaseModel):
    model_config = ConfigDict(extra="forbid")

    password: str | None = None
    key_file: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _legacy_spelling(cls, data: Any) -> Any:
        # Legacy TOML: auth_method = { Password = "..." } / { Key = "..." }
        if isinstance(data, dict):
            data = dict(data)
            if "Password" in data:
                data["password"] = data.pop("Password")
            if "Key" in data:
                data["key_file"] = data.pop("Key")
        return data

    @model_validator(mode="after")
    def _exactly_one(self) -> "_AuthSchema":
        if (self.password is None) == (self.key_file is None):
            raise ValueError("auth needs exactly one of 'password' or 'key_file'")
        return self

    def to_credential(self) -> Credential:
        if self.password is not None:
            return Password(self.password)
        return KeyFile(Path(self.key_file).expanduser())


def _reject_option_prefix(value: str) -> str:
    # these end up as positional arguments to ssh and docker
    if value.startswith("-"):
        raise ValueError(f"must not start with '-': '{value}'")
    return value


class _HostSchema(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    address: str = Field(min_length=1)
    username: str = ""
    ssh_port: int | None = Field(default=None, ge=1, le=65535)
    # "auth" or the legacy "auth_method"
    auth: _AuthSchema | None = Field(default=None, alias="auth_method")

    @field_validator("address", "username")
    @classmethod
    def _no_option_prefix(cls, value: str) -> str:
        return _reject_option_prefix(value)


class _ContainerSchema(BaseModel):
    model_config = ConfigDict(extra="forbid")

    image_name: str = Field(min_length=1)
    container_name: str
    instances: int | None = Field(default=None, ge=1)

    @field_validator("image_name")
    @classmethod
    def _no_option_prefix(cls, value: str) -> str:
        return _reject_option_prefix(value)

    @model_validator(mode="after")
    def _valid_name(self) -> "_ContainerSchema":
        if not _CONTAINER_NAME_RE.match(self.container_name):
            raise ValueError(f"invalid container_name '{self.container_name}'")
        return self


class _DeploymentSchema(BaseModel):
    hosts: list[_HostSchema] = Field(min_length=1)
    parallel_containers: bool = False
    max_concurrency: int = Field(default=DEFAULT_MAX_CONCURRENCY, ge=0)
    retries: int = Field(default=0, ge=0)


class _DockerSchema(BaseModel):
    containers: list[_ContainerSchema] = Field(min_length=1)
    instances: int = Field(default=1, ge=1)
    step_timeout: int = Field(default=DEFAULT_STEP_TIMEOUT, ge=1)
    install_command: str = DEFAULT_INSTALL_COMMAND


class _DatabaseSchema(BaseModel):
    url: str = DEFAULT_DATABASE_URL


class _DocumentSchema(BaseModel):
    # npm/cache sections of older documents are ignored
    model_config = ConfigDict(extra="ignore")

    deployment: _DeploymentSchema
    docker: _DockerSchema
    database: _DatabaseSchema = Field(default_factory=_DatabaseSchema)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def _format_validation_error(exc: ValidationError) -> str:
    lines = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err["loc"])
        lines.append(f"  {loc}: {err['msg']}")
    return "\n".join(lines)


def parse_config(raw: Any, source: Path | None = None) -> MaestroConfig:
    """Validate an already-decoded document and build a MaestroConfig."""
    where = f" in {source}" if source else ""
    if not isinstance(raw, dict):
        raise ConfigError(f"Invalid config{where}: expected a mapping at top level")
    try:
        doc = _DocumentSchema.model_validate(raw)
    except ValidationError as e:
        raise ConfigError(f"Invalid config{where}:\n{_format_validation_error(e)}") from e

    hosts: list[HostDescriptor] = []
    seen_addresses: set[str] = set()
    for entry in doc.deployment.hosts:
        if entry.address in seen_addresses:
            raise ConfigError(f"Duplicate host address '{entry.address}'{where}")
        seen_addresses.add(entry.address)
        hosts.append(HostDescriptor(
            address=entry.address,
            username=entry.username,
            auth=entry.auth.to_credential() if entry.auth else None,
            ssh_port=entry.ssh_port,
        ))

    containers: list[ContainerSpec] = []
    seen_names: set[str] = set()
    for entry in doc.docker.containers:
        if entry.container_name in seen_names:
            raise ConfigError(f"Duplicate container_name '{entry.container_name}'{where}")
        seen_names.add(entry.container_name)
        containers.append(ContainerSpec(
            image_name=entry.image_name,
            container_name=entry.container_name,
            instance_count=entry.instances or doc.docker.instances,
        ))

    policy = (
        ParallelismPolicy.PARALLEL
        if doc.deployment.parallel_containers
        else ParallelismPolicy.SEQUENTIAL
    )
    return MaestroConfig(
        hosts=tuple(hosts),
        containers=tuple(containers),
        policy=policy,
        max_concurrency=doc.deployment.max_concurrency,
        retries=doc.deployment.retries,
        step_timeout=doc.docker.step_timeout,
        install_command=doc.docker.install_command,
        database_url=os.environ.get("MAESTRO_DATABASE_URL", doc.database.url),
        source=source,
    )


def load_config(config_path: Path | None = None) -> MaestroConfig:
    """Load the deployment document from disk.

    Resolution order: explicit path, $MAESTRO_CONFIG, maestro.yaml beside
    this file. Raises ConfigError for anything that keeps the run from
    starting.
    """
    if config_path is None:
        env_path = os.environ.get("MAESTRO_CONFIG")
        config_path = Path(env_path) if env_path else DEFAULT_CONFIG_PATH
    if not config_path.exists():
        msg = f"Config not found: {config_path}"
        if EXAMPLE_CONFIG_PATH.exists():
            msg += f"\n  Copy the example:  cp {EXAMPLE_CONFIG_PATH} {config_path}"
        raise ConfigError(msg)

    try:
        text = config_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigError(f"Failed to read config file {config_path}: {e}") from e

    try:
        if config_path.suffix == ".toml":
            raw = tomllib.loads(text)
        else:
            raw = yaml.safe_load(text)
    except (yaml.YAMLError, tomllib.TOMLDecodeError) as e:
        raise ConfigError(f"Failed to parse config file {config_path}: {e}") from e

    return parse_config(raw, source=config_path)
