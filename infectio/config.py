"""Configuration loading for infectio (.infectio.yml)."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

CONFIG_FILENAME = ".infectio.yml"


class ConfigError(RuntimeError):
    """Raised when the configuration file cannot be parsed."""


@dataclass
class AnalysisConfig:
    """Knobs forwarded to the analysis primitives by each task runner."""

    chunk_size: int = 256
    min_string_length: int = 5
    task_timeout: Optional[float] = None


@dataclass
class SessionConfig:
    """Bounds applied by the session manager when members are re-submitted."""

    max_scan_depth: int = 8
    dedupe_members: bool = True


@dataclass
class ServiceConfig:
    """Bind address for service mode."""

    host: str = "127.0.0.1"
    port: int = 8000


@dataclass
class LoggingConfig:
    """Default log level and optional file sink."""

    level: Optional[str] = None
    file: Optional[Path] = None


@dataclass
class InfectioConfig:
    """Represents the settings defined in .infectio.yml."""

    root: Path
    analysis: AnalysisConfig = field(default_factory=AnalysisConfig)
    sessions: SessionConfig = field(default_factory=SessionConfig)
    service: ServiceConfig = field(default_factory=ServiceConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def default_config(root: Path | None = None) -> InfectioConfig:
    """Return the built-in configuration rooted at ``root`` (cwd by default)."""
    return InfectioConfig(root=(root or Path.cwd()).resolve())


def load_config(config_path: Path) -> InfectioConfig:
    """Load configuration from disk, falling back to defaults when absent."""
    config_file = _resolve_config_path(config_path)
    root = config_file.parent.resolve()

    if not config_file.exists():
        return InfectioConfig(root=root)

    data = _read_config(config_file)
    if not isinstance(data, dict):
        raise ConfigError(f"{CONFIG_FILENAME} must contain a mapping at the root")

    analysis = AnalysisConfig()
    analysis_data = _as_dict(data.get("analysis"))
    if analysis_data:
        chunk_size = _as_int(analysis_data.get("chunk_size"))
        if chunk_size is not None:
            analysis.chunk_size = chunk_size
        min_length = _as_int(analysis_data.get("min_string_length"))
        if min_length is not None:
            analysis.min_string_length = min_length
        analysis.task_timeout = _as_float(analysis_data.get("task_timeout"))

    sessions = SessionConfig()
    sessions_data = _as_dict(data.get("sessions"))
    if sessions_data:
        depth = _as_int(sessions_data.get("max_scan_depth"))
        if depth is not None:
            sessions.max_scan_depth = depth
        dedupe = _as_bool(sessions_data.get("dedupe_members"))
        if dedupe is not None:
            sessions.dedupe_members = dedupe

    service = ServiceConfig()
    service_data = _as_dict(data.get("service"))
    if service_data:
        service.host = _as_str(service_data.get("host")) or service.host
        port = _as_int(service_data.get("port"))
        if port is not None:
            service.port = port

    logging_config = LoggingConfig()
    logging_data = _as_dict(data.get("logging"))
    if logging_data:
        logging_config.level = _as_str(logging_data.get("level"))
        log_file = _as_str(logging_data.get("file"))
        logging_config.file = root / log_file if log_file else None

    config = InfectioConfig(
        root=root,
        analysis=analysis,
        sessions=sessions,
        service=service,
        logging=logging_config,
    )
    _validate(config)
    return config


def _validate(config: InfectioConfig) -> None:
    if config.analysis.chunk_size <= 0:
        raise ConfigError("analysis.chunk_size must be a positive integer")
    if config.analysis.min_string_length <= 0:
        raise ConfigError("analysis.min_string_length must be a positive integer")
    if config.analysis.task_timeout is not None and config.analysis.task_timeout <= 0:
        raise ConfigError("analysis.task_timeout must be positive when set")
    if config.sessions.max_scan_depth < 0:
        raise ConfigError("sessions.max_scan_depth cannot be negative")
    if not 0 < config.service.port < 65536:
        raise ConfigError("service.port must be between 1 and 65535")


def _resolve_config_path(config_path: Path) -> Path:
    config_path = config_path.expanduser()
    if config_path.is_dir():
        return (config_path / CONFIG_FILENAME).resolve()
    return config_path.resolve()


def _read_config(path: Path) -> Any:
    text = path.read_text(encoding="utf-8")
    if not text.strip():
        return {}
    try:
        loaded = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse {path.name}: {exc}") from exc
    return {} if loaded is None else loaded


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_str(value: Any) -> Optional[str]:
    return str(value) if isinstance(value, (str, int, float)) and not isinstance(value, bool) else None


def _as_float(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            return None
    return None


def _as_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "yes", "1"}:
            return True
        if lowered in {"false", "no", "0"}:
            return False
    return None


__all__ = [
    "AnalysisConfig",
    "ConfigError",
    "InfectioConfig",
    "LoggingConfig",
    "ServiceConfig",
    "SessionConfig",
    "default_config",
    "load_config",
]
