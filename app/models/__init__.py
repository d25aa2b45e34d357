from app.models.pipeline_run import PipelineRun

__all__ = ["PipelineRun"]
