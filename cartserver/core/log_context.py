"""
Context attached to log records: the id of the HTTP request being served
and the build job a worker thread is running.

Build threads start with an empty context, so a job binding never leaks
into request handling and vice versa.
"""
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

request_id_var: ContextVar[str] = ContextVar("request_id", default="")
build_job_var: ContextVar[Optional[tuple[str, str]]] = ContextVar("build_job", default=None)


def get_request_id() -> str:
    return request_id_var.get()


def set_request_id(request_id: Optional[str] = None) -> str:
    """Set the request ID (generates new one if not provided)."""
    rid = request_id or str(uuid.uuid4())
    request_id_var.set(rid)
    return rid


def current_build_job() -> Optional[tuple[str, str]]:
    """(job_id, commit_id) bound in this context, if any."""
    return build_job_var.get()


@contextmanager
def build_job_context(job_id: str, commit_id: str) -> Iterator[None]:
    token = build_job_var.set((job_id, commit_id))
    try:
        yield
    finally:
        build_job_var.reset(token)
