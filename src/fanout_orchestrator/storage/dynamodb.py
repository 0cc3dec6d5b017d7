"""DynamoDB-backed status store.

Tables are provisioned outside this package; only their names and key
attribute names are configured here. Task detail queries use strongly
consistent reads so the monitor sees every row the launcher wrote.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

import boto3
from boto3.dynamodb.types import TypeDeserializer, TypeSerializer
from botocore.exceptions import BotoCoreError, ClientError

from fanout_orchestrator.errors import StoreReadError, StoreWriteError
from fanout_orchestrator.schemas import IteratorPayload
from fanout_orchestrator.storage.models import ExecutionRecord, RunSummary, TaskDetail

logger = logging.getLogger(__name__)

_serializer = TypeSerializer()
_deserializer = TypeDeserializer()


class DynamoDBStatusStore:
    """Persist run summaries, task details and executions in DynamoDB tables."""

    def __init__(
        self,
        client: Any | None = None,
        *,
        region: str = "us-east-1",
        summary_table: str = "workflow_summary",
        summary_hash_key: str = "workflow_name",
        summary_range_key: str = "run_id",
        detail_table: str = "workflow_details",
        detail_hash_key: str = "run_id",
        detail_range_key: str = "task_id",
        execution_table: str = "workflow_executions",
    ) -> None:
        self.client = client or boto3.client("dynamodb", region_name=region)
        self.summary_table = summary_table
        self.summary_hash_key = summary_hash_key
        self.summary_range_key = summary_range_key
        self.detail_table = detail_table
        self.detail_hash_key = detail_hash_key
        self.detail_range_key = detail_range_key
        self.execution_table = execution_table

    def migrate(self) -> None:
        return None

    def put_summary(self, summary: RunSummary) -> None:
        item = summary.model_dump(exclude={"workflow_name", "run_id"})
        item[self.summary_hash_key] = summary.workflow_name
        item[self.summary_range_key] = summary.run_id
        self._put(self.summary_table, item)

    def put_detail(self, detail: TaskDetail) -> None:
        item = detail.model_dump(exclude={"run_id", "task_id"})
        item[self.detail_hash_key] = detail.run_id
        item[self.detail_range_key] = detail.task_id
        self._put(self.detail_table, item)

    def update_summary(self, workflow_name: str, run_id: int, fields: dict[str, Any]) -> None:
        key = {self.summary_hash_key: workflow_name, self.summary_range_key: run_id}
        try:
            self._update(self.summary_table, key, fields, must_exist=True)
        except ClientError as exc:
            if _error_code(exc) != "ConditionalCheckFailedException":
                raise StoreWriteError(f"DynamoDB update failed: {exc}") from exc
            logger.debug(
                "store event=summary_missing workflow_name=%s run_id=%s", workflow_name, run_id
            )
        except BotoCoreError as exc:
            raise StoreWriteError(f"DynamoDB update failed: {exc}") from exc

    def update_detail(self, run_id: int, task_id: str, fields: dict[str, Any]) -> None:
        key = {self.detail_hash_key: run_id, self.detail_range_key: task_id}
        try:
            self._update(self.detail_table, key, fields, must_exist=False)
        except (BotoCoreError, ClientError) as exc:
            raise StoreWriteError(f"DynamoDB update failed: {exc}") from exc

    def get_summary(self, workflow_name: str, run_id: int) -> RunSummary | None:
        key = {self.summary_hash_key: workflow_name, self.summary_range_key: run_id}
        try:
            response = self.client.get_item(
                TableName=self.summary_table,
                Key=_serialize(key),
                ConsistentRead=True,
            )
        except (BotoCoreError, ClientError) as exc:
            raise StoreReadError(f"DynamoDB read failed: {exc}") from exc
        raw = response.get("Item")
        if not raw:
            return None
        item = _deserialize(raw)
        item["workflow_name"] = item.pop(self.summary_hash_key)
        item["run_id"] = item.pop(self.summary_range_key)
        return RunSummary.model_validate(item)

    def query_details_by_run(self, run_id: int) -> list[TaskDetail]:
        paginator = self.client.get_paginator("query")
        details: list[TaskDetail] = []
        try:
            pages = paginator.paginate(
                TableName=self.detail_table,
                KeyConditionExpression="#pk = :pk",
                ExpressionAttributeNames={"#pk": self.detail_hash_key},
                ExpressionAttributeValues={":pk": _serializer.serialize(run_id)},
                ConsistentRead=True,
            )
            for page in pages:
                for raw in page.get("Items", []):
                    item = _deserialize(raw)
                    item["run_id"] = item.pop(self.detail_hash_key)
                    item["task_id"] = item.pop(self.detail_range_key)
                    details.append(TaskDetail.model_validate(item))
        except (BotoCoreError, ClientError) as exc:
            raise StoreReadError(f"DynamoDB query failed: {exc}") from exc
        return details

    def put_execution(self, record: ExecutionRecord) -> None:
        item = record.model_dump(mode="json", exclude={"request_snapshot", "payload"})
        item["request_snapshot"] = json.dumps(record.request_snapshot, sort_keys=True)
        if record.payload is not None:
            item["payload"] = json.dumps(record.payload.to_dict(), sort_keys=True)
        for name in ("wake_at", "created_at", "updated_at"):
            value = getattr(record, name)
            item[name] = _timestamp(value) if value is not None else None
        self._put(self.execution_table, item)

    def get_execution(self, execution_id: str) -> ExecutionRecord | None:
        try:
            response = self.client.get_item(
                TableName=self.execution_table,
                Key=_serialize({"execution_id": execution_id}),
                ConsistentRead=True,
            )
        except (BotoCoreError, ClientError) as exc:
            raise StoreReadError(f"DynamoDB read failed: {exc}") from exc
        raw = response.get("Item")
        return self._item_to_execution(_deserialize(raw)) if raw else None

    def list_executions(self, *, state: str | None = None) -> list[ExecutionRecord]:
        paginator = self.client.get_paginator("scan")
        params: dict[str, Any] = {"TableName": self.execution_table, "ConsistentRead": True}
        if state is not None:
            params["FilterExpression"] = "#state = :state"
            params["ExpressionAttributeNames"] = {"#state": "state"}
            params["ExpressionAttributeValues"] = {":state": _serializer.serialize(state)}
        records: list[ExecutionRecord] = []
        try:
            for page in paginator.paginate(**params):
                records.extend(
                    self._item_to_execution(_deserialize(raw)) for raw in page.get("Items", [])
                )
        except (BotoCoreError, ClientError) as exc:
            raise StoreReadError(f"DynamoDB scan failed: {exc}") from exc
        return sorted(records, key=lambda item: item.created_at)

    def claim_execution(
        self,
        execution_id: str,
        *,
        now: datetime,
        lease_until: datetime,
        force: bool = False,
    ) -> ExecutionRecord | None:
        # Same rule as ExecutionRecord.is_claimable, checked by DynamoDB on write.
        waiting = "#state = :wait"
        if not force:
            waiting += " AND (attribute_not_exists(#wake) OR #wake <= :now)"
        try:
            response = self.client.update_item(
                TableName=self.execution_table,
                Key=_serialize({"execution_id": execution_id}),
                UpdateExpression="SET #state = :poll, #wake = :lease, #updated = :now",
                ConditionExpression=(
                    "(attribute_not_exists(#durable) OR #durable = :durable) AND "
                    f"(({waiting}) OR (#state = :poll AND #wake <= :now))"
                ),
                ExpressionAttributeNames={
                    "#state": "state",
                    "#wake": "wake_at",
                    "#updated": "updated_at",
                    "#durable": "durable",
                },
                ExpressionAttributeValues=_serialize(
                    {
                        ":poll": "poll",
                        ":wait": "wait",
                        ":lease": _timestamp(lease_until),
                        ":now": _timestamp(now),
                        ":durable": True,
                    }
                ),
                ReturnValues="ALL_NEW",
            )
        except ClientError as exc:
            if _error_code(exc) == "ConditionalCheckFailedException":
                return None
            raise StoreWriteError(f"DynamoDB claim failed: {exc}") from exc
        except BotoCoreError as exc:
            raise StoreWriteError(f"DynamoDB claim failed: {exc}") from exc
        return self._item_to_execution(_deserialize(response["Attributes"]))

    def _put(self, table: str, item: dict[str, Any]) -> None:
        try:
            self.client.put_item(TableName=table, Item=_serialize(item))
        except (BotoCoreError, ClientError) as exc:
            raise StoreWriteError(f"DynamoDB put into {table} failed: {exc}") from exc

    def _update(
        self,
        table: str,
        key: dict[str, Any],
        fields: dict[str, Any],
        *,
        must_exist: bool,
    ) -> None:
        names: dict[str, str] = {}
        values: dict[str, Any] = {}
        assignments: list[str] = []
        for index, (name, value) in enumerate(fields.items()):
            names[f"#f{index}"] = name
            values[f":v{index}"] = _serializer.serialize(_to_dynamo(value))
            assignments.append(f"#f{index} = :v{index}")
        if not assignments:
            return
        params: dict[str, Any] = {
            "TableName": table,
            "Key": _serialize(key),
            "UpdateExpression": "SET " + ", ".join(assignments),
            "ExpressionAttributeNames": names,
            "ExpressionAttributeValues": values,
        }
        if must_exist:
            names["#pk"] = next(iter(key))
            params["ConditionExpression"] = "attribute_exists(#pk)"
        self.client.update_item(**params)

    @staticmethod
    def _item_to_execution(item: dict[str, Any]) -> ExecutionRecord:
        payload = item.get("payload")
        snapshot = item.get("request_snapshot")
        item["payload"] = IteratorPayload.model_validate(json.loads(payload)) if payload else None
        item["request_snapshot"] = json.loads(snapshot) if snapshot else {}
        for name in ("wake_at", "created_at", "updated_at"):
            if isinstance(item.get(name), str):
                item[name] = datetime.fromisoformat(item[name])
        return ExecutionRecord.model_validate(item)


def _serialize(item: dict[str, Any]) -> dict[str, Any]:
    return {
        name: _serializer.serialize(_to_dynamo(value))
        for name, value in item.items()
        if value is not None
    }


def _deserialize(raw: dict[str, Any]) -> dict[str, Any]:
    return {name: _from_dynamo(_deserializer.deserialize(value)) for name, value in raw.items()}


def _to_dynamo(value: Any) -> Any:
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _from_dynamo(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    return value


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def _timestamp(value: datetime) -> str:
    """Fixed-width UTC text, so string comparisons in condition expressions order by time."""
    return value.astimezone(UTC).isoformat(timespec="microseconds")
