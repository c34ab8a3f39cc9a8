"""
Request schemas for orchestration operations.

Callers (an API layer, the CLI, tests) hand plain dicts or keyword
arguments to OrchestrationService; they are validated here first.
"""

import re
from typing import Dict, List, Optional, Type, TypeVar

import pydantic
from pydantic import BaseModel, Field, field_validator

from .entities import TriggerType
from .errors import ValidationError


ModelT = TypeVar("ModelT", bound=BaseModel)

PARAMETER_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class CreatePipelineRequest(BaseModel):
    """Request to create a pipeline."""

    name: str = Field(..., min_length=1, max_length=128, description="Unique pipeline name")
    description: Optional[str] = Field(default=None, description="Free-form description")
    schedule_cron: Optional[str] = Field(
        default=None,
        description="Cron expression for an external scheduler",
        json_schema_extra={"examples": ["0 * * * *"]},
    )
    is_paused: bool = Field(default=False, description="Paused pipelines are not triggered by schedule")
    concurrency_limit: int = Field(default=0, ge=0, description="Max PENDING+RUNNING runs; 0 = unbounded")

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("name must not be blank")
        return value.strip()


class UpdatePipelineRequest(BaseModel):
    """Partial update of pipeline settings. Omitted fields are unchanged."""

    description: Optional[str] = None
    schedule_cron: Optional[str] = None
    is_paused: Optional[bool] = None
    concurrency_limit: Optional[int] = Field(default=None, ge=0)


class CreatePipelineJobRequest(BaseModel):
    """Request to add a job to a pipeline."""

    name: str = Field(..., min_length=1, max_length=128, description="Job name, unique in the pipeline")
    notebook_id: str = Field(..., min_length=1, description="Notebook executed by this job")
    depends_on: List[str] = Field(default=[], description="Names of jobs that must succeed first")
    job_order: int = Field(default=0, description="Tie-break within a batch (ascending)")
    retry_count: int = Field(default=0, ge=0, le=10, description="Retries after the first attempt")
    timeout_seconds: Optional[int] = Field(default=None, ge=1, description="Passed to the notebook runner")
    compute_endpoint_id: Optional[str] = Field(default=None, description="Passed to the notebook runner")

    @field_validator("depends_on")
    @classmethod
    def unique_dependencies(cls, value: List[str]) -> List[str]:
        if len(set(value)) != len(value):
            raise ValueError("depends_on contains duplicates")
        return value


class TriggerRunRequest(BaseModel):
    """Request to start a pipeline run."""

    parameters: Dict[str, str] = Field(default={}, description="Run parameters (name -> value)")
    trigger_type: TriggerType = Field(default=TriggerType.MANUAL)

    @field_validator("parameters")
    @classmethod
    def parameter_names(cls, value: Dict[str, str]) -> Dict[str, str]:
        for name in value:
            if not PARAMETER_NAME_RE.match(name):
                raise ValueError(f"invalid parameter name: {name!r}")
        return value


class SubmitQueryJobRequest(BaseModel):
    """Request to submit an asynchronous query job."""

    sql_text: str = Field(..., min_length=1, description="SQL to execute")
    request_id: Optional[str] = Field(
        default=None,
        max_length=255,
        description="Idempotency key; resubmitting the same key returns the same job",
    )
    max_attempts: Optional[int] = Field(default=None, ge=1, le=10)

    @field_validator("sql_text")
    @classmethod
    def sql_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("sql_text must not be blank")
        return value


def parse_request(model: Type[ModelT], data: dict) -> ModelT:
    """
    Validate data against a request model.

    Raises:
        ValidationError: With pydantic's messages joined
    """
    try:
        return model.model_validate(data)
    except pydantic.ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in e.errors()
        )
        raise ValidationError(f"Invalid {model.__name__}: {details}") from e
