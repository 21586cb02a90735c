from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Mapping
import os

import yaml

from .models import DEFAULT_POD_COMMAND, DEFAULT_POD_IMAGE, DEFAULT_STORAGE_REQUEST

POD_MODE_RUN_FROM_PVC = "run-from-pvc"
POD_MODE_RUN_FROM_SNAPSHOT = "run-from-snapshot"
POD_MODE_EXEC = "exec"
POD_MODE_DELETE = "delete"
POD_MODE_SMOKE_TEST = "smoke-test"

PVC_MODE_CREATE = "create"
PVC_MODE_GET = "get"
PVC_MODE_DELETE = "delete"
PVC_MODE_SNAPSHOT_FROM_PVC = "snapshot-from-pvc"
PVC_MODE_PVC_FROM_SNAPSHOT = "pvc-from-snapshot"

POD_MODES = (
    POD_MODE_RUN_FROM_PVC,
    POD_MODE_RUN_FROM_SNAPSHOT,
    POD_MODE_EXEC,
    POD_MODE_DELETE,
    POD_MODE_SMOKE_TEST,
)
PVC_MODES = (
    PVC_MODE_CREATE,
    PVC_MODE_GET,
    PVC_MODE_DELETE,
    PVC_MODE_SNAPSHOT_FROM_PVC,
    PVC_MODE_PVC_FROM_SNAPSHOT,
)
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class ConfigurationError(ValueError):
    """Raised when configuration is missing or malformed; detected before any cluster call."""


@dataclass(frozen=True)
class PodSettings:
    mode: str = ""
    name: str = "kmon-pod"
    volume_name: str = "kmon-volume"
    mount_path: str = "/kmon-mnt"
    pvc_name: str = "kmon-pvc"
    snapshot_name: str = "kmon-snapshot"
    image: str = os.getenv("KMON_POD_IMAGE", DEFAULT_POD_IMAGE)
    command: tuple[str, ...] = DEFAULT_POD_COMMAND
    exec_command: tuple[str, ...] = ("sh",)
    ready_timeout_seconds: int = 60
    delete_timeout_seconds: int = 60
    wait_after_restore: bool = False


@dataclass(frozen=True)
class PVCSettings:
    mode: str = ""
    name: str = "kmon-pvc"
    snapshot_class_name: str = ""
    source_pvc_name: str = ""
    snapshot_name: str = "kmon-snap"
    storage_class_name: str | None = None
    storage_request: str = DEFAULT_STORAGE_REQUEST


@dataclass(frozen=True)
class AppConfig:
    namespace: str = "default"
    context: str | None = None
    kubeconfig_path: str | None = os.getenv("KMON_KUBECONFIG")
    in_cluster: bool = False
    log_level: str = os.getenv("KMON_LOG_LEVEL", "INFO")
    exit_delay_seconds: float = float(os.getenv("KMON_EXIT_DELAY_SECONDS", "3"))
    pod: PodSettings = field(default_factory=PodSettings)
    pvc: PVCSettings = field(default_factory=PVCSettings)


_SECTIONS = {"pod": PodSettings, "pvc": PVCSettings}


def load_config(
    config_path: Path | str | None = None,
    *,
    overrides: Mapping[str, Any] | None = None,
) -> AppConfig:
    """Build the effective configuration.

    Defaults are overlaid by the YAML file at ``config_path`` and then by
    ``overrides``, a mapping shaped like the file (``{"pod": {"name": ...}}``)
    whose ``None`` values are ignored.
    """
    config = AppConfig()
    if config_path is not None:
        config = merge_config(config, read_config_file(Path(config_path)))
    if overrides:
        config = merge_config(config, _drop_unset(overrides))
    validate_config(config)
    return config


def read_config_file(path: Path) -> dict[str, Any]:
    try:
        raw = path.expanduser().read_text(encoding="utf-8")
    except OSError as error:
        raise ConfigurationError(f"Unable to read config file '{path}': {error}") from error

    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as error:
        raise ConfigurationError(f"Config file '{path}' is not valid YAML: {error}") from error

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file '{path}' must contain a YAML mapping at the top level.")
    return data


def merge_config(config: AppConfig, values: Mapping[str, Any]) -> AppConfig:
    top_level: dict[str, Any] = {}
    for raw_key, value in values.items():
        key = _normalize_key(raw_key)
        if key in _SECTIONS:
            if value is None:
                continue
            if not isinstance(value, Mapping):
                raise ConfigurationError(f"Config section '{key}' must be a mapping.")
            top_level[key] = _apply_section(getattr(config, key), value, section=key)
        else:
            top_level[key] = _coerce(AppConfig, key, value, section=None)
    return replace(config, **top_level)


def validate_config(config: AppConfig) -> None:
    if not config.namespace.strip():
        raise ConfigurationError("namespace must not be empty.")
    for label, value in (
        ("pod.ready_timeout_seconds", config.pod.ready_timeout_seconds),
        ("pod.delete_timeout_seconds", config.pod.delete_timeout_seconds),
    ):
        if value <= 0:
            raise ConfigurationError(f"{label} must be positive, got {value}.")
    if config.exit_delay_seconds < 0:
        raise ConfigurationError("exit_delay_seconds must not be negative.")
    if not config.pod.exec_command:
        raise ConfigurationError("pod.exec_command must not be empty.")
    if config.log_level.strip().upper() not in LOG_LEVELS:
        raise ConfigurationError(
            f"log_level must be one of {', '.join(LOG_LEVELS)}, got '{config.log_level}'."
        )


def validate_mode(kind: str, mode: str) -> str:
    """Return the stripped ``mode`` if it names a known workflow for ``kind`` (``pod`` or ``pvc``)."""
    supported = POD_MODES if kind == "pod" else PVC_MODES
    normalized = mode.strip()
    if normalized not in supported:
        raise ConfigurationError(
            f"invalid {kind} mode: '{mode}'. Supported modes: {', '.join(sorted(supported))}."
        )
    return normalized


def _apply_section(current: Any, values: Mapping[str, Any], *, section: str) -> Any:
    updates = {
        _normalize_key(key): _coerce(type(current), _normalize_key(key), value, section=section)
        for key, value in values.items()
    }
    return replace(current, **updates)


def _coerce(settings_type: type, key: str, value: Any, *, section: str | None) -> Any:
    known = {item.name: item for item in fields(settings_type)}
    label = f"{section}.{key}" if section else key
    if key not in known or key in _SECTIONS:
        raise ConfigurationError(f"Unknown configuration key '{label}'.")

    default = getattr(settings_type(), key)
    if value is None:
        return default
    if isinstance(default, tuple):
        if isinstance(value, str):
            return tuple(value.split())
        if isinstance(value, (list, tuple)):
            return tuple(str(item) for item in value)
        raise ConfigurationError(f"'{label}' must be a list of strings or a string.")
    if isinstance(default, bool):
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().lower() in {"1", "true", "yes", "on", "0", "false", "no", "off"}:
            return value.strip().lower() in {"1", "true", "yes", "on"}
        raise ConfigurationError(f"'{label}' must be a boolean.")
    if isinstance(default, (int, float)):
        try:
            return type(default)(value)
        except (TypeError, ValueError) as error:
            raise ConfigurationError(f"'{label}' must be a number, got {value!r}.") from error
    return str(value)


def _drop_unset(values: Mapping[str, Any]) -> dict[str, Any]:
    cleaned: dict[str, Any] = {}
    for key, value in values.items():
        if isinstance(value, Mapping):
            nested = _drop_unset(value)
            if nested:
                cleaned[key] = nested
        elif value is not None:
            cleaned[key] = value
    return cleaned


def _normalize_key(key: Any) -> str:
    return str(key).strip().replace("-", "_")
