"""Function-style entry points for step-function deployments.

``launch_handler`` receives a launch request and returns the iterator payload;
``monitor_handler`` receives that payload (optionally wrapped as
``{"iterator": {...}}``) and returns it with ``continue`` set.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any

from fanout_orchestrator.config.settings import get_settings
from fanout_orchestrator.launcher import TaskLauncher
from fanout_orchestrator.monitor import TaskMonitor
from fanout_orchestrator.runtime import (
    build_backend,
    build_launcher,
    build_monitor,
    build_store,
    configure_logging,
)
from fanout_orchestrator.storage.base import StatusStore

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def _store() -> StatusStore:
    settings = get_settings()
    configure_logging(settings.log_level)
    return build_store(settings)


@lru_cache(maxsize=1)
def _launcher() -> TaskLauncher:
    settings = get_settings()
    return build_launcher(settings, _store(), build_backend(settings))


@lru_cache(maxsize=1)
def _monitor() -> TaskMonitor:
    return build_monitor(_store())


def reset_handler_state() -> None:
    """Drop cached dependencies so the next invocation rebuilds them from settings."""
    _monitor.cache_clear()
    _launcher.cache_clear()
    _store.cache_clear()


def launch_handler(event: dict[str, Any], context: Any = None) -> dict[str, Any]:
    request_id = getattr(context, "aws_request_id", None)
    logger.info("handler event=launch request_id=%s", request_id)
    payload = _launcher().launch(event)
    return payload.to_dict()


def monitor_handler(event: dict[str, Any], context: Any = None) -> dict[str, Any]:
    request_id = getattr(context, "aws_request_id", None)
    logger.info("handler event=monitor request_id=%s", request_id)
    return _monitor().poll(event).to_dict()
