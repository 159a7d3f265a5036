from __future__ import annotations

from dataclasses import dataclass

from waylog.app_config import AppConfig, RuntimeEnv
from waylog.attribution import create_policy
from waylog.logging_config import setup_logging
from waylog.paths import state_path
from waylog.provider import SUPPORTED_PROVIDERS, ProviderAdapter, create_provider
from waylog.state import StateStore
from waylog.synchronizer import Synchronizer


@dataclass
class AppRuntime:
    synchronizer: Synchronizer
    log_descriptions: list[str]


def build_providers(app: AppConfig) -> dict[str, ProviderAdapter]:
    policy = create_policy(app.attribution_policy)
    providers: dict[str, ProviderAdapter] = {}
    for name in SUPPORTED_PROVIDERS:
        settings = app.providers.get(name)
        providers[name] = create_provider(
            name,
            data_dir=settings.data_dir if settings else None,
            executable=settings.executable if settings else None,
            policy=policy,
        )
    return providers


def bootstrap_runtime(app: AppConfig, env: RuntimeEnv, *, interactive: bool = False) -> AppRuntime:
    log_descriptions = setup_logging(
        level=env.log_level_override or app.log_level,
        consumers=app.log_consumers,
        base_dir=env.project_dir,
        interactive=interactive,
    )

    store = StateStore(state_path(env.project_dir), lock_timeout=app.state_lock_timeout_seconds)
    synchronizer = Synchronizer(
        env.project_dir,
        build_providers(app),
        store,
        poll_interval=app.poll_interval_seconds,
        lock_timeout=app.state_lock_timeout_seconds,
    )
    return AppRuntime(synchronizer=synchronizer, log_descriptions=log_descriptions)
