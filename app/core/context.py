import contextvars

_request_id: contextvars.ContextVar[str] = contextvars.ContextVar("request_id", default="-")
_pipeline_run_id: contextvars.ContextVar[str] = contextvars.ContextVar("pipeline_run_id", default="-")


def set_request_id(request_id: str) -> None:
    _request_id.set(request_id)


def get_request_id() -> str:
    return _request_id.get()


def set_pipeline_run_id(run_id: str) -> None:
    _pipeline_run_id.set(run_id)


def get_pipeline_run_id() -> str:
    return _pipeline_run_id.get()


def clear_context() -> None:
    _request_id.set("-")
    _pipeline_run_id.set("-")
