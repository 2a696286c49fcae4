"""
Config models for composite-service.

Uses pydantic to validate and normalize the composite service config into a
read-only service graph: every service merged over the service defaults,
unknown fields rejected, dependencies checked for unknown ids and cycles.
Also defines the context records passed to ready and on_crash functions.
"""

import shlex
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Literal, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .config import config
from .errors import ConfigValidationError
from .stream import LineStream

LogLevel = Literal["debug", "info", "error"]


@dataclass(frozen=True)
class ReadyContext:
    """Passed to a service's ready function."""

    output: LineStream


@dataclass(frozen=True)
class Crash:
    """One unexpected exit of a service process."""

    date: datetime
    log_tail: list[str]
    exit_code: Optional[int] = None


@dataclass(frozen=True)
class CrashContext:
    """Passed to a service's on_crash function."""

    is_service_ready: bool
    crash: Crash
    crashes: tuple[Crash, ...]


class ReadyFunction(Protocol):
    """Resolves once the service is usable by its dependents; raising is fatal."""

    def __call__(self, ctx: ReadyContext) -> Optional[Awaitable[None]]: ...


class CrashFunction(Protocol):
    """Decides what happens after a crash: returning restarts, raising is fatal."""

    def __call__(self, ctx: CrashContext) -> Optional[Awaitable[None]]: ...


async def ready_on_spawn(ctx: ReadyContext):
    """Ready as soon as the process has spawned."""


async def restart_if_started(ctx: CrashContext):
    """Restart services that had become ready; anything else is fatal."""
    if not ctx.is_service_ready:
        raise RuntimeError("Crashed before becoming ready")


class ServiceConfig(BaseModel):
    """Config for one supervised service."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    command: list[str] = Field(..., description="Program and arguments, run without a shell")
    cwd: Optional[str] = Field(None, description="Working directory")
    env: dict[str, str] = Field(default_factory=dict, description="Added to the supervisor's environment")
    dependencies: tuple[str, ...] = Field((), description="Ids of services that must be ready first")
    ready: Callable[[ReadyContext], Any] = Field(ready_on_spawn, description="Readiness check")
    on_crash: Callable[[CrashContext], Any] = Field(restart_if_started, description="Crash policy")
    minimum_restart_delay: float = Field(
        default_factory=lambda: config.restart_delay,
        ge=0,
        description="Seconds between a crash and the restart",
    )
    log_tail_length: int = Field(
        default_factory=lambda: config.log_tail_length,
        ge=0,
        description="Output lines kept for crash reports",
    )
    log_level: Optional[LogLevel] = Field(None, description="Overrides the composite log level")
    ready_timeout: Optional[float] = Field(None, gt=0, description="Seconds to wait for readiness")
    force_kill_timeout: Optional[float] = Field(None, gt=0, description="Seconds before SIGKILL on stop")

    @field_validator("command", mode="before")
    @classmethod
    def split_command(cls, value):
        if isinstance(value, str):
            return shlex.split(value)
        return value

    @field_validator("command")
    @classmethod
    def check_command(cls, value: list[str]) -> list[str]:
        if not value:
            raise ValueError("command must not be empty")
        return value

    @field_validator("env", mode="before")
    @classmethod
    def stringify_env(cls, value):
        # Numbers are allowed for convenience, e.g. {"PORT": 8000}
        if isinstance(value, Mapping):
            return {str(key): str(item) for key, item in value.items() if item is not None}
        return value


class CompositeServiceConfig(BaseModel):
    """Validated composite service config: log level plus the service graph."""

    model_config = ConfigDict(extra="forbid")

    log_level: LogLevel = Field(default_factory=lambda: config.log_level, validate_default=True)
    service_defaults: dict[str, Any] = Field(default_factory=dict)
    services: dict[str, ServiceConfig]

    @model_validator(mode="before")
    @classmethod
    def apply_service_defaults(cls, data):
        if not isinstance(data, Mapping):
            return data
        data = dict(data)
        defaults = data.get("service_defaults") or {}
        services = data.get("services")
        if isinstance(services, Mapping):
            merged = {}
            for service_id, service in services.items():
                # Falsy entries disable a service
                if not service:
                    continue
                if isinstance(service, ServiceConfig):
                    service = service.model_dump(exclude_unset=True)
                if isinstance(service, Mapping):
                    service = {**defaults, **service}
                merged[service_id] = service
            data["services"] = merged
        return data

    @model_validator(mode="after")
    def check_service_graph(self):
        if not self.services:
            raise ValueError("No services configured")
        for service_id, service in self.services.items():
            for dependency in service.dependencies:
                if dependency not in self.services:
                    raise ValueError(
                        f"Service '{service_id}' has dependency on unknown service '{dependency}'"
                    )
        cycle = find_dependency_cycle(self.services)
        if cycle:
            raise ValueError(f"Service '{cycle[0]}' has cyclic dependency {' -> '.join(cycle)}")
        return self

    def dependents(self, service_id: str) -> list[str]:
        """Ids of services that list service_id as a dependency."""
        return [
            other_id
            for other_id, service in self.services.items()
            if service_id in service.dependencies
        ]


def find_dependency_cycle(services: Mapping[str, ServiceConfig]) -> Optional[list[str]]:
    """Return one dependency cycle as a path of ids, or None if the graph is acyclic."""
    visiting: list[str] = []
    visited: set[str] = set()

    def visit(service_id: str) -> Optional[list[str]]:
        if service_id in visited:
            return None
        if service_id in visiting:
            return visiting[visiting.index(service_id):] + [service_id]
        visiting.append(service_id)
        for dependency in services[service_id].dependencies:
            cycle = visit(dependency)
            if cycle:
                return cycle
        visiting.pop()
        visited.add(service_id)
        return None

    for service_id in services:
        cycle = visit(service_id)
        if cycle:
            return cycle
    return None


def validate_config(data) -> CompositeServiceConfig:
    """Validate and normalize a composite service config."""
    if isinstance(data, CompositeServiceConfig):
        return data
    try:
        return CompositeServiceConfig.model_validate(data)
    except ValidationError as error:
        raise ConfigValidationError(f"Invalid composite service config: {error}") from error
