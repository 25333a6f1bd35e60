"""
Bulk query execution.

A tool call carries 1..N queries. Each one is validated, executed and
classified on its own task; a semaphore bounds how many run at once, and
any failure becomes that query's error result without touching the others.
Results are returned in input order.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence

from pydantic import ValidationError as PydanticValidationError

from .errors import BatchValidationError, QueryCancelledError, ToolError, ValidationError
from .hints import HintEngine, classify
from .models import QUERY_ADAPTER, BaseQuery, BatchEnvelope, QueryResult
from .tools.base import Tool, ToolOutcome
from .tools.config import get_section

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 3
DEFAULT_LOCAL_MAX_QUERIES = 5
DEFAULT_LSP_MAX_QUERIES = 3


def extract_queries(payload: Any) -> List[Dict[str, Any]]:
    """Accept {"queries": [...]}, a bare list, or a single query object."""
    if isinstance(payload, list):
        return list(payload)
    if isinstance(payload, dict):
        if "queries" in payload:
            queries = payload.get("queries")
            if not isinstance(queries, list):
                raise BatchValidationError("'queries' must be an array.")
            return list(queries)
        return [payload] if payload else []
    raise BatchValidationError("Tool input must be a query object or a 'queries' array.")


def _format_validation_error(exc: PydanticValidationError, tag: str = "") -> str:
    parts = []
    for item in exc.errors()[:3]:
        # union errors are prefixed with the discriminator value
        location = ".".join(str(part) for part in item.get("loc", ()) if part not in ("tool", tag)) or "query"
        parts.append(f"{location}: {item.get('msg', 'invalid value')}")
    return "Invalid query: " + "; ".join(parts)


def build_instructions(results: Sequence[QueryResult]) -> str:
    total = len(results)
    counts = {"hasResults": 0, "empty": 0, "error": 0}
    for result in results:
        counts[result.status] += 1
    noun = "result" if total == 1 else "results"
    return (
        f"{total} {noun}: {counts['hasResults']} hasResults, "
        f"{counts['empty']} empty, {counts['error']} error."
    )


class BulkExecutor:
    """
    Runs a batch of queries for one tool with bounded concurrency.

    Per-query task handles are kept while a batch runs so a single query can
    be cancelled through `cancel(index)` without affecting its siblings.
    """

    def __init__(
        self,
        concurrency: int = DEFAULT_CONCURRENCY,
        local_max_queries: int = DEFAULT_LOCAL_MAX_QUERIES,
        lsp_max_queries: int = DEFAULT_LSP_MAX_QUERIES,
        query_timeout: Optional[float] = None,
        hint_engine: Optional[HintEngine] = None,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.concurrency = concurrency
        self.caps = {"local": local_max_queries, "lsp": lsp_max_queries}
        self.query_timeout = query_timeout
        self.hint_engine = hint_engine or HintEngine()
        self._tasks: Dict[int, asyncio.Task] = {}

    @classmethod
    def from_config(cls) -> "BulkExecutor":
        cfg = get_section("bulk")
        timeout = cfg.get("query_timeout_sec")
        return cls(
            concurrency=int(cfg.get("concurrency", DEFAULT_CONCURRENCY)),
            local_max_queries=int(cfg.get("local_max_queries", DEFAULT_LOCAL_MAX_QUERIES)),
            lsp_max_queries=int(cfg.get("lsp_max_queries", DEFAULT_LSP_MAX_QUERIES)),
            query_timeout=float(timeout) if timeout else None,
        )

    def cap_for(self, tool: Tool) -> int:
        return self.caps.get(tool.family, self.caps["local"])

    def cancel(self, index: int) -> bool:
        """Cancel the query at 0-based `index` of the running batch."""
        task = self._tasks.get(index)
        if task is None or task.done():
            return False
        return task.cancel()

    def validate_batch(self, tool: Tool, queries: Sequence[Any]) -> None:
        cap = self.cap_for(tool)
        if not queries:
            raise BatchValidationError("At least one query is required.")
        if len(queries) > cap:
            raise BatchValidationError(f"{tool.name} accepts at most {cap} queries per call (got {len(queries)}).")

    def _parse(self, tool: Tool, raw: Any) -> BaseQuery:
        if isinstance(raw, BaseQuery):
            return raw
        if not isinstance(raw, dict):
            raise ValidationError("Each query must be an object.")
        data = dict(raw)
        declared = data.setdefault("tool", tool.name)
        if declared != tool.name:
            raise ValidationError(f"Query targets '{declared}' but was sent to '{tool.name}'.")
        try:
            return QUERY_ADAPTER.validate_python(data)
        except PydanticValidationError as exc:
            raise ValidationError(_format_validation_error(exc, tool.name))

    def _error_result(self, index: int, error: ToolError, narrative: Dict[str, str]) -> QueryResult:
        payload = error.to_dict()
        details = {key: value for key, value in payload.items() if key not in ("errorCode", "error")}
        return QueryResult(
            id=index + 1,
            status="error",
            errorCode=error.code,
            error=error.message.splitlines()[0] if error.message else error.code,
            data=details or None,
            hints=self.hint_engine.for_error(error),
            **narrative,
        )

    async def _run_one(self, tool: Tool, index: int, raw: Any, semaphore: asyncio.Semaphore) -> QueryResult:
        narrative: Dict[str, str] = {}
        try:
            query = self._parse(tool, raw)
            narrative = query.narrative()
            async with semaphore:
                if self.query_timeout:
                    outcome: ToolOutcome = await asyncio.wait_for(tool.run(query), timeout=self.query_timeout)
                else:
                    outcome = await tool.run(query)
        except ToolError as exc:
            logger.info("%s query %d failed: %s (%s)", tool.name, index + 1, exc.message, exc.code)
            return self._error_result(index, exc, narrative)
        except asyncio.TimeoutError:
            logger.warning("%s query %d exceeded %ss", tool.name, index + 1, self.query_timeout)
            return self._error_result(index, ToolError(f"Query exceeded {self.query_timeout:g}s.", code="commandTimeout"), narrative)
        except asyncio.CancelledError:
            logger.info("%s query %d cancelled", tool.name, index + 1)
            return self._error_result(index, QueryCancelledError("Query was cancelled."), narrative)
        except Exception:
            logger.exception("%s query %d raised an unexpected error", tool.name, index + 1)
            return self._error_result(index, ToolError("Tool execution failed."), narrative)

        status = classify(outcome.count)
        return QueryResult(
            id=index + 1,
            status=status,
            data=outcome.data,
            hints=self.hint_engine.hints_for(tool.name, status, outcome.hints, narrative),
            **narrative,
        )

    async def run(self, tool: Tool, queries: Sequence[Any]) -> BatchEnvelope:
        """
        Execute every query of one tool call.

        Raises:
            BatchValidationError: Empty batch or more queries than the tool's cap
        """
        self.validate_batch(tool, queries)
        semaphore = asyncio.Semaphore(self.concurrency)
        self._tasks = {
            index: asyncio.create_task(self._run_one(tool, index, raw, semaphore))
            for index, raw in enumerate(queries)
        }
        try:
            settled = await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        finally:
            self._tasks = {}
        results: List[QueryResult] = []
        for index, item in enumerate(settled):
            if isinstance(item, QueryResult):
                results.append(item)
            elif isinstance(item, asyncio.CancelledError):
                results.append(self._error_result(index, QueryCancelledError("Query was cancelled."), {}))
            else:
                logger.error("%s query %d settled with %r", tool.name, index + 1, item)
                results.append(self._error_result(index, ToolError("Tool execution failed."), {}))
        return BatchEnvelope(instructions=build_instructions(results), results=results)
