"""Amazon ECS execution backend: one ``run_task`` call per work unit."""

from __future__ import annotations

import logging
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from fanout_orchestrator.backend.base import SubmissionContext, unit_environment
from fanout_orchestrator.errors import MalformedInputError, SubmissionError
from fanout_orchestrator.schemas import RunTarget, WorkUnitSpec

logger = logging.getLogger(__name__)


class EcsExecutionBackend:
    """Submit work units as ECS tasks with per-unit container environment overrides."""

    def __init__(self, client: Any | None = None, *, region: str = "us-east-1") -> None:
        self.region = region
        self.client = client or boto3.client("ecs", region_name=region)

    def check_target(self, run_target: RunTarget) -> None:
        missing = [
            name
            for name in ("cluster_name", "task_definition", "container_name")
            if not getattr(run_target, name)
        ]
        if run_target.launch_type.upper() == "FARGATE" and not run_target.subnet_ids:
            missing.append("subnet_ids")
        if missing:
            raise MalformedInputError(f"run_target is missing required fields: {missing}")

    def submit(self, unit: WorkUnitSpec, context: SubmissionContext) -> str:
        target = context.run_target
        environment = {"region": self.region, **unit_environment(unit, context)}
        request: dict[str, Any] = {
            "cluster": target.cluster_name,
            "taskDefinition": target.task_definition,
            "launchType": target.launch_type,
            "count": 1,
            "overrides": {
                "containerOverrides": [
                    {
                        "name": target.container_name,
                        "environment": [
                            {"name": name, "value": value}
                            for name, value in environment.items()
                        ],
                    }
                ]
            },
        }
        if target.subnet_ids:
            request["networkConfiguration"] = {
                "awsvpcConfiguration": {
                    "subnets": list(target.subnet_ids),
                    "securityGroups": list(target.security_group_ids),
                    "assignPublicIp": "ENABLED" if target.assign_public_ip else "DISABLED",
                }
            }

        try:
            response = self.client.run_task(**request)
        except (BotoCoreError, ClientError) as exc:
            raise SubmissionError(
                f"ECS rejected task {unit.task_name!r}: {exc}",
                task_name=unit.task_name,
                workflow_name=context.workflow_name,
                run_id=context.run_id,
            ) from exc

        failures = response.get("failures") or []
        tasks = response.get("tasks") or []
        if failures or not tasks:
            reasons = [str(item.get("reason", "unknown")) for item in failures]
            reasons = reasons or ["no task started"]
            raise SubmissionError(
                f"ECS did not start task {unit.task_name!r}: {', '.join(reasons)}",
                task_name=unit.task_name,
                workflow_name=context.workflow_name,
                run_id=context.run_id,
            )

        task_arn = str(tasks[0]["taskArn"])
        logger.info(
            "ecs_submit event=started workflow_name=%s run_id=%s task_name=%s task_arn=%s "
            "last_status=%s",
            context.workflow_name,
            context.run_id,
            unit.task_name,
            task_arn,
            tasks[0].get("lastStatus"),
        )
        return task_arn
