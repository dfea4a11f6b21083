from __future__ import annotations

from collections.abc import AsyncIterator

from fastapi import Depends

from .core.config import Settings, get_settings
from .orchestration.orchestrator import Orchestrator
from .services.repository import Repository


_orchestrator_singleton: Orchestrator | None = None


def get_orchestrator_singleton(settings: Settings) -> Orchestrator:
    global _orchestrator_singleton
    if _orchestrator_singleton is None:
        _orchestrator_singleton = Orchestrator.from_settings(settings)
    return _orchestrator_singleton


def reset_orchestrator_singleton() -> Orchestrator | None:
    global _orchestrator_singleton
    previous = _orchestrator_singleton
    _orchestrator_singleton = None
    return previous


def get_app_settings() -> Settings:
    return get_settings()


async def get_orchestrator(
    settings: Settings = Depends(get_app_settings),
) -> AsyncIterator[Orchestrator]:
    yield get_orchestrator_singleton(settings)


async def get_repository(
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> AsyncIterator[Repository]:
    yield orchestrator.repository
