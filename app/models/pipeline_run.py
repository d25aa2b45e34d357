import uuid

from sqlalchemy import JSON, CheckConstraint, Column, DateTime, Index, Integer, String, Text, func

from app.db.base import Base


RUN_STAGES = ("submit", "approve", "return")

RUN_STATUSES = (
    "pending",
    "running",
    "done",
    "failed",
)


def _new_run_id() -> str:
    return uuid.uuid4().hex


class PipelineRun(Base):
    __tablename__ = "pipeline_runs"
    __table_args__ = (
        CheckConstraint(
            "stage IN ('submit', 'approve', 'return')",
            name="ck_pipeline_run_stage",
        ),
        CheckConstraint(
            "status IN ('pending', 'running', 'done', 'failed')",
            name="ck_pipeline_run_status",
        ),
        Index("ix_pipeline_runs_status_created", "status", "created_at"),
    )

    id = Column(String(32), primary_key=True, default=_new_run_id)
    stage = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default="pending")
    reference = Column(String(64), nullable=True, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    payload = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )
    finished_at = Column(DateTime(timezone=True), nullable=True)
