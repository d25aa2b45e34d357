from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class PipelineStage(str, Enum):
    SUBMIT = "submit"
    APPROVE = "approve"
    RETURN = "return"


class PipelineStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


class LoanSubmission(BaseModel):
    """Captured loan request; ``photo_path`` points at the staged upload until it is stored."""

    borrower_name: str = ""
    class_name: str = ""
    student_id: str = ""
    phone: str = ""
    equipment_name: str = ""
    quantity: int = Field(default=0, ge=0)
    loan_date: str = ""
    due_date: str = ""
    note: str = ""
    photo_path: str | None = None
    photo_url: str | None = None


class ApprovalDecision(BaseModel):
    loan_id: str = Field(min_length=1)
    approver: str = Field(min_length=1)
    decision: str = Field(min_length=1)
    generate_document: bool = True


class ReturnReport(BaseModel):
    loan_id: str = Field(min_length=1)
    condition: str = ""
    note: str = ""
    photo_path: str | None = None
    photo_url: str | None = None


class PipelineRunDTO(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)

    id: str
    stage: PipelineStage
    status: PipelineStatus
    reference: str | None = None
    attempts: int = 0
    last_error: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    finished_at: datetime | None = None


class PipelineRunList(BaseModel):
    items: list[PipelineRunDTO]
    total: int
