from datetime import UTC, datetime

import boto3
import pytest
from botocore.stub import Stubber

from fanout_orchestrator.errors import StoreReadError, StoreWriteError
from fanout_orchestrator.storage.dynamodb import DynamoDBStatusStore
from fanout_orchestrator.storage.models import RunSummary


@pytest.fixture
def client():
    return boto3.client(
        "dynamodb",
        region_name="us-east-1",
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
    )


@pytest.fixture
def dynamo_store(client) -> DynamoDBStatusStore:
    return DynamoDBStatusStore(
        client,
        summary_range_key="workflow_run_id",
        detail_hash_key="workflow_run_id",
        detail_range_key="ecs_task_id",
    )


def test_put_summary_uses_configured_key_names(client, dynamo_store) -> None:
    summary = RunSummary(
        workflow_name="wf",
        run_id=17,
        spec_snapshot="{}",
        task_count=2,
        running_tasks=2,
        start_time="2024-03-01T12:00:00+00:00",
    )
    with Stubber(client) as stubber:
        stubber.add_response(
            "put_item",
            {},
            {
                "TableName": "workflow_summary",
                "Item": {
                    "workflow_name": {"S": "wf"},
                    "workflow_run_id": {"N": "17"},
                    "spec_snapshot": {"S": "{}"},
                    "task_count": {"N": "2"},
                    "status": {"S": "Running"},
                    "completed_tasks": {"N": "0"},
                    "failed_tasks": {"N": "0"},
                    "running_tasks": {"N": "2"},
                    "start_time": {"S": "2024-03-01T12:00:00+00:00"},
                },
            },
        )
        dynamo_store.put_summary(summary)
        stubber.assert_no_pending_responses()


def test_update_summary_is_conditional_and_skips_missing_rows(client, dynamo_store) -> None:
    with Stubber(client) as stubber:
        stubber.add_response(
            "update_item",
            {},
            {
                "TableName": "workflow_summary",
                "Key": {"workflow_name": {"S": "wf"}, "workflow_run_id": {"N": "17"}},
                "UpdateExpression": "SET #f0 = :v0",
                "ExpressionAttributeNames": {"#f0": "status", "#pk": "workflow_name"},
                "ExpressionAttributeValues": {":v0": {"S": "Completed"}},
                "ConditionExpression": "attribute_exists(#pk)",
            },
        )
        stubber.add_client_error(
            "update_item", service_error_code="ConditionalCheckFailedException"
        )
        dynamo_store.update_summary("wf", 17, {"status": "Completed"})
        dynamo_store.update_summary("wf", 17, {"status": "Completed"})
        stubber.assert_no_pending_responses()


def test_update_summary_wraps_other_client_errors(client, dynamo_store) -> None:
    with Stubber(client) as stubber:
        stubber.add_client_error(
            "update_item", service_error_code="ProvisionedThroughputExceededException"
        )
        with pytest.raises(StoreWriteError):
            dynamo_store.update_summary("wf", 17, {"status": "Completed"})


def test_update_detail_upserts_without_condition(client, dynamo_store) -> None:
    with Stubber(client) as stubber:
        stubber.add_response(
            "update_item",
            {},
            {
                "TableName": "workflow_details",
                "Key": {"workflow_run_id": {"N": "17"}, "ecs_task_id": {"S": "arn-1"}},
                "UpdateExpression": "SET #f0 = :v0, #f1 = :v1",
                "ExpressionAttributeNames": {"#f0": "status", "#f1": "exec_time_in_seconds"},
                "ExpressionAttributeValues": {":v0": {"S": "Failed"}, ":v1": {"N": "12"}},
            },
        )
        dynamo_store.update_detail(17, "arn-1", {"status": "Failed", "exec_time_in_seconds": 12})
        stubber.assert_no_pending_responses()


def test_query_details_reads_every_page_consistently(client, dynamo_store) -> None:
    with Stubber(client) as stubber:
        stubber.add_response(
            "query",
            {
                "Items": [
                    {
                        "workflow_run_id": {"N": "17"},
                        "ecs_task_id": {"S": "arn-1"},
                        "status": {"S": "Completed"},
                        "exec_time_in_seconds": {"N": "30"},
                    }
                ],
                "LastEvaluatedKey": {
                    "workflow_run_id": {"N": "17"},
                    "ecs_task_id": {"S": "arn-1"},
                },
            },
            {
                "TableName": "workflow_details",
                "KeyConditionExpression": "#pk = :pk",
                "ExpressionAttributeNames": {"#pk": "workflow_run_id"},
                "ExpressionAttributeValues": {":pk": {"N": "17"}},
                "ConsistentRead": True,
            },
        )
        stubber.add_response(
            "query",
            {
                "Items": [
                    {
                        "workflow_run_id": {"N": "17"},
                        "ecs_task_id": {"S": "arn-2"},
                        "status": {"S": "Running"},
                    }
                ]
            },
            None,
        )
        details = dynamo_store.query_details_by_run(17)

    assert [detail.task_id for detail in details] == ["arn-1", "arn-2"]
    assert details[0].run_id == 17
    assert details[0].exec_time_in_seconds == 30
    assert details[1].status == "Running"


def test_query_failure_raises_store_read_error(client, dynamo_store) -> None:
    with Stubber(client) as stubber:
        stubber.add_client_error("query", service_error_code="ResourceNotFoundException")
        with pytest.raises(StoreReadError):
            dynamo_store.query_details_by_run(17)


def test_get_summary_returns_none_for_missing_item(client, dynamo_store) -> None:
    with Stubber(client) as stubber:
        stubber.add_response("get_item", {}, None)
        assert dynamo_store.get_summary("wf", 17) is None


def test_get_execution_decodes_json_attributes(client, dynamo_store) -> None:
    with Stubber(client) as stubber:
        stubber.add_response(
            "get_item",
            {
                "Item": {
                    "execution_id": {"S": "exec-1"},
                    "workflow_name": {"S": "wf"},
                    "state": {"S": "wait"},
                    "request_snapshot": {"S": '{"workflow_name": "wf"}'},
                    "payload": {
                        "S": '{"continue": true, "ecs_task_ids": ["arn-1"], '
                        '"run_id": 17, "workflow_name": "wf"}'
                    },
                    "poll_count": {"N": "3"},
                    "wake_at": {"S": "2024-03-01T12:02:00+00:00"},
                    "completed_tasks": {"N": "0"},
                    "failed_tasks": {"N": "0"},
                    "running_tasks": {"N": "1"},
                    "created_at": {"S": "2024-03-01T12:00:00+00:00"},
                    "updated_at": {"S": "2024-03-01T12:00:00+00:00"},
                }
            },
            {
                "TableName": "workflow_executions",
                "Key": {"execution_id": {"S": "exec-1"}},
                "ConsistentRead": True,
            },
        )
        record = dynamo_store.get_execution("exec-1")

    assert record.state == "wait"
    assert record.payload.continue_ is True
    assert record.payload.ecs_task_ids == ["arn-1"]
    assert record.request_snapshot == {"workflow_name": "wf"}
    assert record.wake_at == datetime(2024, 3, 1, 12, 2, tzinfo=UTC)


def _claim_params(condition: str) -> dict:
    return {
        "TableName": "workflow_executions",
        "Key": {"execution_id": {"S": "exec-1"}},
        "UpdateExpression": "SET #state = :poll, #wake = :lease, #updated = :now",
        "ConditionExpression": condition,
        "ExpressionAttributeNames": {
            "#state": "state",
            "#wake": "wake_at",
            "#updated": "updated_at",
            "#durable": "durable",
        },
        "ExpressionAttributeValues": {
            ":poll": {"S": "poll"},
            ":wait": {"S": "wait"},
            ":lease": {"S": "2024-03-01T12:07:00.000000+00:00"},
            ":now": {"S": "2024-03-01T12:02:00.000000+00:00"},
            ":durable": {"BOOL": True},
        },
        "ReturnValues": "ALL_NEW",
    }


def test_claim_execution_is_a_conditional_update(client, dynamo_store) -> None:
    now = datetime(2024, 3, 1, 12, 2, tzinfo=UTC)
    lease = datetime(2024, 3, 1, 12, 7, tzinfo=UTC)
    with Stubber(client) as stubber:
        stubber.add_response(
            "update_item",
            {
                "Attributes": {
                    "execution_id": {"S": "exec-1"},
                    "workflow_name": {"S": "wf"},
                    "state": {"S": "poll"},
                    "durable": {"BOOL": True},
                    "request_snapshot": {"S": "{}"},
                    "poll_count": {"N": "1"},
                    "wake_at": {"S": "2024-03-01T12:07:00.000000+00:00"},
                    "created_at": {"S": "2024-03-01T12:00:00.000000+00:00"},
                    "updated_at": {"S": "2024-03-01T12:02:00.000000+00:00"},
                }
            },
            _claim_params(
                "(attribute_not_exists(#durable) OR #durable = :durable) AND "
                "((#state = :wait AND (attribute_not_exists(#wake) OR #wake <= :now)) "
                "OR (#state = :poll AND #wake <= :now))"
            ),
        )
        stubber.add_client_error(
            "update_item", service_error_code="ConditionalCheckFailedException"
        )
        claimed = dynamo_store.claim_execution("exec-1", now=now, lease_until=lease)
        lost = dynamo_store.claim_execution("exec-1", now=now, lease_until=lease)
        stubber.assert_no_pending_responses()

    assert claimed.state == "poll"
    assert claimed.wake_at == lease
    assert lost is None


def test_forced_claim_skips_the_wake_time_check(client, dynamo_store) -> None:
    now = datetime(2024, 3, 1, 12, 2, tzinfo=UTC)
    lease = datetime(2024, 3, 1, 12, 7, tzinfo=UTC)
    with Stubber(client) as stubber:
        stubber.add_client_error(
            "update_item",
            service_error_code="ConditionalCheckFailedException",
            expected_params=_claim_params(
                "(attribute_not_exists(#durable) OR #durable = :durable) AND "
                "((#state = :wait) OR (#state = :poll AND #wake <= :now))"
            ),
        )
        claimed = dynamo_store.claim_execution("exec-1", now=now, lease_until=lease, force=True)
        assert claimed is None
        stubber.assert_no_pending_responses()


def test_claim_execution_wraps_throttling(client, dynamo_store) -> None:
    now = datetime(2024, 3, 1, 12, 2, tzinfo=UTC)
    with Stubber(client) as stubber:
        stubber.add_client_error(
            "update_item", service_error_code="ProvisionedThroughputExceededException"
        )
        with pytest.raises(StoreWriteError):
            dynamo_store.claim_execution("exec-1", now=now, lease_until=now)
