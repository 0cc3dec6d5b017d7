"""PostgreSQL-backed status store with automatic table migration."""

from __future__ import annotations

import json
import threading
from datetime import datetime
from typing import Any

from fanout_orchestrator.errors import StoreReadError, StoreWriteError
from fanout_orchestrator.schemas import IteratorPayload
from fanout_orchestrator.storage.models import ExecutionRecord, RunSummary, TaskDetail

_SUMMARY_FIELDS = (
    "spec_snapshot",
    "task_count",
    "status",
    "completed_tasks",
    "failed_tasks",
    "running_tasks",
    "start_time",
    "update_time",
)
_DETAIL_FIELDS = (
    "task_name",
    "status",
    "start_time",
    "update_time",
    "exec_time_in_seconds",
)


class PostgresStatusStore:
    """Persist run summaries, task details and executions in PostgreSQL.

    Table names and key column names are configurable so one database can host
    several deployments side by side.
    """

    def __init__(
        self,
        database_url: str,
        *,
        summary_table: str = "workflow_summary",
        summary_hash_key: str = "workflow_name",
        summary_range_key: str = "run_id",
        detail_table: str = "workflow_details",
        detail_hash_key: str = "run_id",
        detail_range_key: str = "task_id",
        execution_table: str = "workflow_executions",
    ) -> None:
        if not database_url:
            raise ValueError("FANOUT_ORCHESTRATOR_DATABASE_URL is required")
        self.database_url = database_url
        self._lock = threading.Lock()
        self._psycopg, self._dict_row, self._json_wrapper, self._sql = self._load_psycopg()
        ident = self._sql.Identifier
        self._summary_table = ident(summary_table)
        self._summary_hash = ident(summary_hash_key)
        self._summary_range = ident(summary_range_key)
        self._summary_hash_name = summary_hash_key
        self._summary_range_name = summary_range_key
        self._detail_table = ident(detail_table)
        self._detail_hash = ident(detail_hash_key)
        self._detail_range = ident(detail_range_key)
        self._detail_hash_name = detail_hash_key
        self._detail_range_name = detail_range_key
        self._execution_table = ident(execution_table)

    def migrate(self) -> None:
        sql = self._sql
        statements = [
            sql.SQL("""
                CREATE TABLE IF NOT EXISTS {table} (
                    {hash_key} TEXT NOT NULL,
                    {range_key} BIGINT NOT NULL,
                    spec_snapshot TEXT NOT NULL,
                    task_count INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    completed_tasks INTEGER NOT NULL DEFAULT 0,
                    failed_tasks INTEGER NOT NULL DEFAULT 0,
                    running_tasks INTEGER NOT NULL DEFAULT 0,
                    start_time TEXT NOT NULL,
                    update_time TEXT,
                    PRIMARY KEY ({hash_key}, {range_key})
                )
                """).format(
                table=self._summary_table,
                hash_key=self._summary_hash,
                range_key=self._summary_range,
            ),
            sql.SQL("""
                CREATE TABLE IF NOT EXISTS {table} (
                    {hash_key} BIGINT NOT NULL,
                    {range_key} TEXT NOT NULL,
                    task_name TEXT NOT NULL DEFAULT '',
                    status TEXT NOT NULL,
                    start_time TEXT,
                    update_time TEXT,
                    exec_time_in_seconds BIGINT,
                    PRIMARY KEY ({hash_key}, {range_key})
                )
                """).format(
                table=self._detail_table,
                hash_key=self._detail_hash,
                range_key=self._detail_range,
            ),
            sql.SQL("""
                CREATE TABLE IF NOT EXISTS {table} (
                    execution_id TEXT PRIMARY KEY,
                    workflow_name TEXT NOT NULL,
                    state TEXT NOT NULL,
                    request_snapshot JSONB NOT NULL DEFAULT '{{}}'::jsonb,
                    payload JSONB,
                    poll_count INTEGER NOT NULL DEFAULT 0,
                    wake_at TIMESTAMPTZ,
                    last_error TEXT,
                    completed_tasks INTEGER NOT NULL DEFAULT 0,
                    failed_tasks INTEGER NOT NULL DEFAULT 0,
                    running_tasks INTEGER NOT NULL DEFAULT 0,
                    durable BOOLEAN NOT NULL DEFAULT TRUE,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """).format(table=self._execution_table),
            sql.SQL(
                "ALTER TABLE {table} "
                "ADD COLUMN IF NOT EXISTS durable BOOLEAN NOT NULL DEFAULT TRUE"
            ).format(table=self._execution_table),
        ]
        with self._lock, self._connect() as conn:
            for statement in statements:
                conn.execute(statement)
            conn.commit()

    def put_summary(self, summary: RunSummary) -> None:
        names = list(_SUMMARY_FIELDS)
        self._upsert(
            self._summary_table,
            [self._summary_hash, self._summary_range, *self._identifiers(names)],
            [summary.workflow_name, summary.run_id, *(getattr(summary, n) for n in names)],
            conflict=[self._summary_hash, self._summary_range],
            updates=_SUMMARY_FIELDS,
        )

    def put_detail(self, detail: TaskDetail) -> None:
        names = list(_DETAIL_FIELDS)
        self._upsert(
            self._detail_table,
            [self._detail_hash, self._detail_range, *self._identifiers(names)],
            [detail.run_id, detail.task_id, *(getattr(detail, n) for n in names)],
            conflict=[self._detail_hash, self._detail_range],
            updates=_DETAIL_FIELDS,
        )

    def update_summary(self, workflow_name: str, run_id: int, fields: dict[str, Any]) -> None:
        updates = _filter_fields(fields, _SUMMARY_FIELDS)
        if not updates:
            return
        sql = self._sql
        statement = sql.SQL(
            "UPDATE {table} SET {assignments} WHERE {hash_key} = %s AND {range_key} = %s"
        ).format(
            table=self._summary_table,
            assignments=_assignments(sql, updates),
            hash_key=self._summary_hash,
            range_key=self._summary_range,
        )
        self._write(statement, [*updates.values(), workflow_name, run_id])

    def update_detail(self, run_id: int, task_id: str, fields: dict[str, Any]) -> None:
        updates = _filter_fields(fields, _DETAIL_FIELDS)
        if not updates:
            return
        # A new row still needs a status; existing rows only get the given fields.
        inserted = {"status": "Running", **updates}
        self._upsert(
            self._detail_table,
            [self._detail_hash, self._detail_range, *self._identifiers(list(inserted))],
            [run_id, task_id, *inserted.values()],
            conflict=[self._detail_hash, self._detail_range],
            updates=tuple(updates),
        )

    def get_summary(self, workflow_name: str, run_id: int) -> RunSummary | None:
        statement = self._sql.SQL(
            "SELECT * FROM {table} WHERE {hash_key} = %s AND {range_key} = %s"
        ).format(
            table=self._summary_table,
            hash_key=self._summary_hash,
            range_key=self._summary_range,
        )
        rows = self._read(statement, [workflow_name, run_id])
        if not rows:
            return None
        row = rows[0]
        return RunSummary(
            workflow_name=str(row[self._summary_hash_name]),
            run_id=int(row[self._summary_range_name]),
            **{name: row[name] for name in _SUMMARY_FIELDS},
        )

    def query_details_by_run(self, run_id: int) -> list[TaskDetail]:
        statement = self._sql.SQL(
            "SELECT * FROM {table} WHERE {hash_key} = %s ORDER BY {range_key}"
        ).format(
            table=self._detail_table,
            hash_key=self._detail_hash,
            range_key=self._detail_range,
        )
        return [
            TaskDetail(
                run_id=int(row[self._detail_hash_name]),
                task_id=str(row[self._detail_range_name]),
                **{name: row[name] for name in _DETAIL_FIELDS},
            )
            for row in self._read(statement, [run_id])
        ]

    def put_execution(self, record: ExecutionRecord) -> None:
        data = record.model_dump(mode="json")
        data["request_snapshot"] = self._json_wrapper(data["request_snapshot"])
        if data["payload"] is not None:
            data["payload"] = self._json_wrapper(data["payload"])
        data["wake_at"] = record.wake_at
        data["created_at"] = record.created_at
        data["updated_at"] = record.updated_at
        names = list(data)
        self._upsert(
            self._execution_table,
            self._identifiers(names),
            [data[name] for name in names],
            conflict=[self._sql.Identifier("execution_id")],
            updates=tuple(name for name in names if name not in ("execution_id", "created_at")),
        )

    def get_execution(self, execution_id: str) -> ExecutionRecord | None:
        statement = self._sql.SQL("SELECT * FROM {table} WHERE execution_id = %s").format(
            table=self._execution_table
        )
        rows = self._read(statement, [execution_id])
        return self._row_to_execution(rows[0]) if rows else None

    def list_executions(self, *, state: str | None = None) -> list[ExecutionRecord]:
        sql = self._sql
        if state is None:
            statement = sql.SQL("SELECT * FROM {table} ORDER BY created_at").format(
                table=self._execution_table
            )
            rows = self._read(statement, [])
        else:
            statement = sql.SQL(
                "SELECT * FROM {table} WHERE state = %s ORDER BY created_at"
            ).format(table=self._execution_table)
            rows = self._read(statement, [state])
        return [self._row_to_execution(row) for row in rows]

    def claim_execution(
        self,
        execution_id: str,
        *,
        now: datetime,
        lease_until: datetime,
        force: bool = False,
    ) -> ExecutionRecord | None:
        # Same rule as ExecutionRecord.is_claimable, checked inside one UPDATE.
        statement = self._sql.SQL(
            "UPDATE {table} SET state = 'poll', wake_at = %s, updated_at = %s "
            "WHERE execution_id = %s AND durable AND ("
            "(state = 'wait' AND (%s OR wake_at IS NULL OR wake_at <= %s)) "
            "OR (state = 'poll' AND wake_at <= %s)"
            ") RETURNING *"
        ).format(table=self._execution_table)
        rows = self._write_returning(statement, [lease_until, now, execution_id, force, now, now])
        return self._row_to_execution(rows[0]) if rows else None

    def _upsert(
        self,
        table: Any,
        columns: list[Any],
        values: list[Any],
        *,
        conflict: list[Any],
        updates: tuple[str, ...],
    ) -> None:
        sql = self._sql
        statement = sql.SQL(
            "INSERT INTO {table} ({columns}) VALUES ({placeholders}) "
            "ON CONFLICT ({conflict}) DO UPDATE SET {assignments}"
        ).format(
            table=table,
            columns=sql.SQL(", ").join(columns),
            placeholders=sql.SQL(", ").join(sql.Placeholder() * len(columns)),
            conflict=sql.SQL(", ").join(conflict),
            assignments=sql.SQL(", ").join(
                sql.SQL("{name} = EXCLUDED.{name}").format(name=sql.Identifier(name))
                for name in updates
            ),
        )
        self._write(statement, values)

    def _identifiers(self, names: list[str]) -> list[Any]:
        return [self._sql.Identifier(name) for name in names]

    def _write(self, statement: Any, params: list[Any]) -> None:
        try:
            with self._lock, self._connect() as conn:
                conn.execute(statement, params)
                conn.commit()
        except self._psycopg.Error as exc:
            raise StoreWriteError(f"PostgreSQL write failed: {exc}") from exc

    def _write_returning(self, statement: Any, params: list[Any]) -> list[Any]:
        try:
            with self._lock, self._connect() as conn:
                rows = list(conn.execute(statement, params).fetchall())
                conn.commit()
                return rows
        except self._psycopg.Error as exc:
            raise StoreWriteError(f"PostgreSQL write failed: {exc}") from exc

    def _read(self, statement: Any, params: list[Any]) -> list[Any]:
        try:
            with self._lock, self._connect() as conn:
                return list(conn.execute(statement, params).fetchall())
        except self._psycopg.Error as exc:
            raise StoreReadError(f"PostgreSQL read failed: {exc}") from exc

    def _connect(self) -> Any:
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any, Any, Any]:
        try:
            import psycopg
            from psycopg import sql
            from psycopg.rows import dict_row
            from psycopg.types.json import Json
        except ImportError as exc:  # pragma: no cover
            raise RuntimeError(
                "PostgreSQL storage requires psycopg. "
                'Install with: python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row, Json, sql

    @staticmethod
    def _parse_json_optional(raw: Any) -> dict[str, Any] | None:
        if raw is None:
            return None
        parsed = json.loads(raw) if isinstance(raw, str) else raw
        if isinstance(parsed, dict):
            return parsed
        return None

    @staticmethod
    def _parse_datetime(raw: Any) -> datetime | None:
        if raw is None or isinstance(raw, datetime):
            return raw
        if isinstance(raw, str):
            return datetime.fromisoformat(raw)
        raise TypeError(f"Unsupported datetime value: {type(raw)!r}")

    @classmethod
    def _row_to_execution(cls, row: Any) -> ExecutionRecord:
        payload = cls._parse_json_optional(row.get("payload"))
        return ExecutionRecord(
            execution_id=str(row["execution_id"]),
            workflow_name=str(row["workflow_name"]),
            state=row["state"],
            request_snapshot=cls._parse_json_optional(row.get("request_snapshot")) or {},
            payload=IteratorPayload.model_validate(payload) if payload else None,
            poll_count=int(row["poll_count"]),
            wake_at=cls._parse_datetime(row.get("wake_at")),
            last_error=row.get("last_error"),
            completed_tasks=int(row["completed_tasks"]),
            failed_tasks=int(row["failed_tasks"]),
            running_tasks=int(row["running_tasks"]),
            durable=bool(row.get("durable", True)),
            created_at=cls._parse_datetime(row["created_at"]),
            updated_at=cls._parse_datetime(row["updated_at"]),
        )


def _filter_fields(fields: dict[str, Any], allowed: tuple[str, ...]) -> dict[str, Any]:
    unknown = sorted(set(fields) - set(allowed))
    if unknown:
        raise StoreWriteError(f"Unsupported fields for update: {unknown}")
    return {name: fields[name] for name in allowed if name in fields}


def _assignments(sql: Any, updates: dict[str, Any]) -> Any:
    return sql.SQL(", ").join(
        sql.SQL("{name} = %s").format(name=sql.Identifier(name)) for name in updates
    )
