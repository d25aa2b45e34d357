from functools import lru_cache

from app.core.settings import settings
from app.services.loan_lifecycle import LifecycleOrchestrator
from app.services.pipeline_queue import PipelineSupervisor


@lru_cache(maxsize=1)
def get_orchestrator() -> LifecycleOrchestrator:
    return LifecycleOrchestrator()


@lru_cache(maxsize=1)
def get_supervisor() -> PipelineSupervisor:
    return PipelineSupervisor(
        get_orchestrator(),
        queue_size=settings.pipeline_queue_size,
        workers=settings.pipeline_workers,
    )
