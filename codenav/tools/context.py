from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Iterator


# Per-request values: work_path, extra_work_paths.
_tool_context: ContextVar[Dict[str, Any]] = ContextVar("_tool_context", default={})


def set_tool_context(value: Dict[str, Any]):
    return _tool_context.set(value or {})


def reset_tool_context(token) -> None:
    _tool_context.reset(token)


def get_tool_context() -> Dict[str, Any]:
    return _tool_context.get() or {}


@contextmanager
def tool_context(value: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
    token = set_tool_context(value)
    try:
        yield get_tool_context()
    finally:
        reset_tool_context(token)
