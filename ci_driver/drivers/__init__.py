"""Provider driver registration and environment-driven selection."""

from __future__ import annotations

import os
from collections.abc import Callable
from typing import Any

from ci_driver.drivers.contracts import ConfigurationError, ProviderDriver
from ci_driver.shared.settings import DriverSettings, ExecutionContext


def _build_github(
    settings: DriverSettings, context: ExecutionContext, env: dict[str, str], **options: Any
) -> ProviderDriver:
    from ci_driver.drivers.github.github_auth import load_github_auth_from_env
    from ci_driver.drivers.github.github_driver import GitHubDriver

    return GitHubDriver(
        repo_url=settings.repo_url,
        auth=load_github_auth_from_env(env),
        context=context,
        **options,
    )


DriverFactory = Callable[..., ProviderDriver]


def registered_drivers() -> dict[str, DriverFactory]:
    drivers: dict[str, DriverFactory] = {"github": _build_github}
    return dict(sorted(drivers.items(), key=lambda kv: kv[0]))


def build_driver_from_env(
    env: dict[str, str] | None = None,
    *,
    context: ExecutionContext | None = None,
    **options: Any,
) -> ProviderDriver:
    env_map = os.environ if env is None else env
    settings = DriverSettings.from_env(env_map)
    factory = registered_drivers().get(settings.provider)
    if factory is None:
        raise ConfigurationError(f"Unsupported provider: {settings.provider}")
    resolved_context = context if context is not None else ExecutionContext.from_env(env_map)
    return factory(settings, resolved_context, env_map, **options)


__all__ = ["build_driver_from_env", "registered_drivers"]
