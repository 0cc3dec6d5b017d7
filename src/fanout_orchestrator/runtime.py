"""Build stores, backends and services from settings."""

from __future__ import annotations

import logging

from fanout_orchestrator.backend.base import ExecutionBackend
from fanout_orchestrator.backend.ecs import EcsExecutionBackend
from fanout_orchestrator.backend.memory import InMemoryExecutionBackend
from fanout_orchestrator.config.settings import Settings
from fanout_orchestrator.launcher import TaskLauncher
from fanout_orchestrator.monitor import TaskMonitor
from fanout_orchestrator.orchestrator import Orchestrator
from fanout_orchestrator.storage.base import StatusStore
from fanout_orchestrator.storage.dynamodb import DynamoDBStatusStore
from fanout_orchestrator.storage.memory import InMemoryStatusStore
from fanout_orchestrator.storage.postgres import PostgresStatusStore

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)


def build_store(settings: Settings) -> StatusStore:
    table_names = {
        "summary_table": settings.summary_table_name,
        "summary_hash_key": settings.summary_hash_key,
        "summary_range_key": settings.summary_range_key,
        "detail_table": settings.detail_table_name,
        "detail_hash_key": settings.detail_hash_key,
        "detail_range_key": settings.detail_range_key,
        "execution_table": settings.execution_table_name,
    }
    if settings.store_backend == "postgres":
        store: StatusStore = PostgresStatusStore(settings.database_url, **table_names)
    elif settings.store_backend == "dynamodb":
        store = DynamoDBStatusStore(region=settings.region, **table_names)
    else:
        store = InMemoryStatusStore()
    store.migrate()
    return store


def build_backend(settings: Settings) -> ExecutionBackend:
    if settings.execution_backend == "ecs":
        return EcsExecutionBackend(region=settings.region)
    return InMemoryExecutionBackend()


def task_environment(settings: Settings) -> dict[str, str]:
    """Detail-table coordinates every work unit needs to report its own status."""
    return {
        "workflow_details_ddb_table_name": settings.detail_table_name,
        "workflow_details_hash_key": settings.detail_hash_key,
        "workflow_details_range_key": settings.detail_range_key,
    }


def build_launcher(
    settings: Settings, store: StatusStore, backend: ExecutionBackend
) -> TaskLauncher:
    return TaskLauncher(
        store,
        backend,
        concurrency=settings.submit_concurrency,
        environment=task_environment(settings),
    )


def build_monitor(store: StatusStore) -> TaskMonitor:
    return TaskMonitor(store)


def build_orchestrator(
    settings: Settings,
    store: StatusStore,
    backend: ExecutionBackend,
) -> Orchestrator:
    return Orchestrator(
        store,
        build_launcher(settings, store, backend),
        build_monitor(store),
        poll_interval_s=settings.poll_interval_s,
        lease_s=settings.claim_lease_s,
    )
