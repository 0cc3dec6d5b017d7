"""Pydantic schemas for launch input and the iterator payload."""

from __future__ import annotations

from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, model_validator

from fanout_orchestrator.errors import MalformedInputError

# Keys of the flat legacy launch input that belong to deployment config, not the batch.
_LEGACY_CONFIG_KEYS = (
    "region",
    "ddbTableNameWFSummary",
    "hashKeyWFSummary",
    "rangeKeyWFSummary",
    "ddbTableNameWFDetails",
    "hashKeyWFDetails",
    "rangeKeyWFDetails",
)


class StrictModel(BaseModel):
    """Base model for strict schema validation."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class WorkUnitSpec(StrictModel):
    """One unit of work submitted to the execution backend."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True, frozen=True)

    task_name: str = Field(min_length=1, validation_alias=AliasChoices("task_name", "taskName"))
    source_location: str = ""
    transform_params: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _fold_legacy_fields(cls, data: Any) -> Any:
        if not isinstance(data, dict) or "s3BucketName" not in data:
            return data
        folded = dict(data)
        bucket = str(folded.pop("s3BucketName") or "")
        key = str(folded.pop("objectKey", "") or "")
        folded.setdefault("source_location", f"s3://{bucket}/{key}")
        return folded


class RunTarget(StrictModel):
    """Where and how work units run on the execution backend."""

    cluster_name: str = ""
    task_definition: str = ""
    container_name: str = ""
    subnet_ids: list[str] = Field(default_factory=list)
    security_group_ids: list[str] = Field(default_factory=list)
    launch_type: str = "FARGATE"
    assign_public_ip: bool = False
    resource_overrides: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _split_literals(cls, data: Any) -> Any:
        if not isinstance(data, dict) or "subnet_id_literal" not in data:
            return data
        folded = dict(data)
        separator = str(folded.pop("separator", None) or ",")
        folded.setdefault("subnet_ids", _split_tokens(folded.pop("subnet_id_literal"), separator))
        if "security_group_literal" in folded:
            folded.setdefault(
                "security_group_ids",
                _split_tokens(folded.pop("security_group_literal"), separator),
            )
        return folded


class LaunchRequest(StrictModel):
    """A batch of work units for one workflow run."""

    workflow_name: str = Field(
        min_length=1, validation_alias=AliasChoices("workflow_name", "workflowName")
    )
    run_target: RunTarget = Field(default_factory=RunTarget)
    task_list: list[WorkUnitSpec] = Field(
        default_factory=list, validation_alias=AliasChoices("task_list", "taskList")
    )

    @model_validator(mode="before")
    @classmethod
    def _fold_legacy_target(cls, data: Any) -> Any:
        if not isinstance(data, dict) or "clusterName" not in data:
            return data
        folded = dict(data)
        separator = str(folded.pop("separator", None) or ",")
        target = dict(folded.pop("run_target", None) or {})
        target.setdefault("cluster_name", folded.pop("clusterName"))
        target.setdefault("container_name", folded.pop("containerName", ""))
        target.setdefault("task_definition", folded.pop("taskDefinition", ""))
        target.setdefault(
            "subnet_ids", _split_tokens(folded.pop("subnetIdLiteral", ""), separator)
        )
        target.setdefault(
            "security_group_ids", _split_tokens(folded.pop("securityGroupId", ""), separator)
        )
        for key in _LEGACY_CONFIG_KEYS:
            folded.pop(key, None)
        folded["run_target"] = target
        return folded


class IteratorPayload(StrictModel):
    """Run identity threaded through Launch, Poll and Wait.

    ``continue_`` is serialized as ``continue``; it is absent on launcher output
    and set on every monitor output.
    """

    workflow_name: str = Field(
        min_length=1, validation_alias=AliasChoices("workflow_name", "workflowName")
    )
    run_id: int = Field(ge=0, validation_alias=AliasChoices("run_id", "workflowRunId"))
    ecs_task_ids: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("ecs_task_ids", "ecsTaskArns", "task_ids"),
    )
    continue_: bool | None = Field(
        default=None,
        validation_alias=AliasChoices("continue", "continue_"),
        serialization_alias="continue",
    )

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    @classmethod
    def from_event(cls, event: Any) -> IteratorPayload:
        """Validate a raw payload, unwrapping an ``{"iterator": {...}}`` envelope."""
        if isinstance(event, dict) and isinstance(event.get("iterator"), dict):
            event = event["iterator"]
        try:
            return cls.model_validate(event)
        except ValidationError as exc:
            raise MalformedInputError(f"Invalid iterator payload: {exc}") from exc


def parse_launch_request(data: Any) -> LaunchRequest:
    """Validate raw launch input and raise ``MalformedInputError`` on failure."""
    if isinstance(data, LaunchRequest):
        return data
    try:
        return LaunchRequest.model_validate(data)
    except ValidationError as exc:
        raise MalformedInputError(f"Invalid launch request: {exc}") from exc


def _split_tokens(raw: Any, separator: str) -> list[str]:
    if isinstance(raw, list):
        return [str(item).strip() for item in raw if str(item).strip()]
    return [token.strip() for token in str(raw or "").split(separator) if token.strip()]
