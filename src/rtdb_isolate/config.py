"""Configuration for the client boundary and the worker.

Worker settings resolve in three layers: environment variables, then an
optional YAML file, then command-line flags.
"""

from __future__ import annotations

import importlib
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

import yaml

from .backend import DatabaseFactory

ENV_BACKEND = "RTDB_ISOLATE_BACKEND"
ENV_HOST = "RTDB_ISOLATE_HOST"
ENV_PORT = "RTDB_ISOLATE_PORT"
ENV_LOG_LEVEL = "RTDB_ISOLATE_LOG_LEVEL"

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 4097


@dataclass
class BoundaryConfig:
    """Configuration for client-side boundaries."""

    # "local" | "stdio" | "websocket"
    mode: str = "local"

    # Applies to single-shot executes only; subscriptions never time out
    timeout: float | None = None

    # Stdio settings (worker subprocess)
    command: list[str] = field(default_factory=lambda: ["rtdb-isolate", "--stdio"])
    working_directory: str | None = None
    env: dict[str, str] | None = None

    # WebSocket settings (attach to a running worker)
    url: str = f"http://{DEFAULT_HOST}:{DEFAULT_PORT}"


@dataclass
class WorkerConfig:
    """Configuration for a worker process."""

    backend: str | None = None  # "package.module:factory"
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls) -> WorkerConfig:
        """Build a config from RTDB_ISOLATE_* environment variables."""
        config = cls()
        if backend := os.environ.get(ENV_BACKEND):
            config.backend = backend
        if host := os.environ.get(ENV_HOST):
            config.host = host
        if port := os.environ.get(ENV_PORT):
            config.port = int(port)
        if log_level := os.environ.get(ENV_LOG_LEVEL):
            config.log_level = log_level.upper()
        return config

    @classmethod
    def from_file(cls, path: str | Path, base: WorkerConfig | None = None) -> WorkerConfig:
        """Load a YAML config file on top of `base` (defaults if omitted).

        Raises:
            ValueError: If the file is not a mapping or has unknown keys
        """
        data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Worker config {path} must be a mapping")
        return (base or cls()).merged(**data)

    def merged(self, **overrides: Any) -> WorkerConfig:
        """Return a copy with every non-None override applied."""
        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise ValueError(f"Unknown worker config keys: {', '.join(sorted(unknown))}")
        changes = {name: value for name, value in overrides.items() if value is not None}
        if "port" in changes:
            changes["port"] = int(changes["port"])
        if "log_level" in changes:
            changes["log_level"] = str(changes["log_level"]).upper()
        return replace(self, **changes)


def load_backend_factory(path: str) -> DatabaseFactory:
    """Import the database factory named by a ``module:attribute`` path.

    Raises:
        ValueError: If the path is malformed or the attribute is not callable
        ImportError: If the module cannot be imported
    """
    module_name, sep, attribute = path.partition(":")
    if not sep or not module_name or not attribute:
        raise ValueError(f"Backend must look like 'package.module:factory', got {path!r}")

    module = importlib.import_module(module_name)
    target: Any = module
    for part in attribute.split("."):
        target = getattr(target, part)
    if not callable(target):
        raise ValueError(f"Backend {path!r} is not callable")
    return target
