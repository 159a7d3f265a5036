from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path

from waylog.paths import config_path


@dataclass
class RuntimeEnv:
    project_dir: Path
    log_level_override: str | None


@dataclass
class ProviderSettings:
    data_dir: Path | None = None
    executable: str | None = None


@dataclass
class AppConfig:
    log_level: str
    log_consumers: list | None
    poll_interval_seconds: float
    attribution_policy: str
    state_lock_timeout_seconds: float
    providers: dict[str, ProviderSettings] = field(default_factory=dict)


def load_json_config(project_dir: Path) -> dict:
    path = config_path(project_dir)
    if path.exists():
        with open(path, encoding="utf-8") as f:
            return json.load(f)
    return {}


def _parse_provider_settings(raw: object) -> dict[str, ProviderSettings]:
    if not isinstance(raw, dict):
        return {}
    settings: dict[str, ProviderSettings] = {}
    for name, values in raw.items():
        values = values if isinstance(values, dict) else {}
        data_dir = str(values.get("DataDir", "")).strip()
        executable = str(values.get("Executable", "")).strip()
        settings[str(name).strip().lower()] = ProviderSettings(
            data_dir=Path(data_dir).expanduser() if data_dir else None,
            executable=executable or None,
        )
    return settings


def parse_app_config(config: dict) -> AppConfig:
    return AppConfig(
        log_level=str(config.get("LogLevel", "INFO")).upper(),
        log_consumers=config.get("LogConsumers"),
        poll_interval_seconds=float(config.get("PollIntervalSeconds", 2.0)),
        attribution_policy=str(config.get("AttributionPolicy", "ancestor")).strip().lower(),
        state_lock_timeout_seconds=float(config.get("StateLockTimeoutSeconds", 10)),
        providers=_parse_provider_settings(config.get("Providers", {})),
    )


def resolve_runtime_env(project_dir: Path | None = None) -> RuntimeEnv:
    level = os.environ.get("WAYLOG_LOG_LEVEL", "").strip()
    return RuntimeEnv(
        project_dir=(project_dir or Path.cwd()).resolve(),
        log_level_override=level.upper() or None,
    )
