"""Tests for batch execution: caps, isolation, ordering and concurrency."""
import asyncio
import json

import pytest

from codenav.bulk import BulkExecutor, build_instructions, extract_queries
from codenav.errors import BatchValidationError, CommandFailedError, PathValidationError
from codenav.models import GotoDefinitionQuery, LocalSearchQuery
from codenav.tools.base import Tool, ToolOutcome


class ScriptedSearchTool(Tool):
    """local_search stand-in whose behaviour is chosen by the pattern."""

    query_model = LocalSearchQuery

    def __init__(self):
        super().__init__()
        self.name = "local_search"
        self.description = "scripted"
        self.active = 0
        self.peak = 0
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def run(self, query: LocalSearchQuery) -> ToolOutcome:
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            if query.pattern.startswith("sleep:"):
                await asyncio.sleep(float(query.pattern.split(":", 1)[1]))
            elif query.pattern == "block":
                self.started.set()
                await self.release.wait()
            elif query.pattern == "fail":
                raise CommandFailedError("rg exited with code 2.\nregex parse error", returncode=2)
            elif query.pattern == "escape":
                raise PathValidationError("Path '../x' is outside the allowed roots.", hints=["Current working directory: /w", "Try: /w/x"])
            elif query.pattern == "crash":
                raise RuntimeError("unexpected")
            if query.pattern == "none":
                return ToolOutcome(data={"files": []}, count=0)
            return ToolOutcome(data={"pattern": query.pattern}, count=1, hints=["  "])
        finally:
            self.active -= 1


class ScriptedLspTool(Tool):
    family = "lsp"
    query_model = GotoDefinitionQuery

    def __init__(self):
        super().__init__()
        self.name = "lsp_goto_definition"
        self.runs = 0

    async def run(self, query):
        self.runs += 1
        return ToolOutcome(data={}, count=1)


def q(pattern, **extra):
    return {"pattern": pattern, **extra}


@pytest.mark.asyncio
async def test_empty_batch_and_over_cap_rejected_before_execution():
    tool = ScriptedSearchTool()
    executor = BulkExecutor(local_max_queries=5)

    with pytest.raises(BatchValidationError):
        await executor.run(tool, [])
    with pytest.raises(BatchValidationError):
        await executor.run(tool, [q("a")] * 6)
    assert tool.peak == 0


@pytest.mark.asyncio
async def test_lsp_family_has_its_own_cap():
    tool = ScriptedLspTool()
    query = {"uri": "a.py", "symbolName": "f", "lineHint": 1}

    with pytest.raises(BatchValidationError):
        await BulkExecutor(lsp_max_queries=3).run(tool, [query] * 4)
    assert tool.runs == 0

    envelope = await BulkExecutor(lsp_max_queries=3).run(tool, [query] * 3)
    assert [r.status for r in envelope.results] == ["hasResults"] * 3


@pytest.mark.asyncio
async def test_results_follow_input_order_not_completion_order():
    tool = ScriptedSearchTool()

    envelope = await BulkExecutor(concurrency=5).run(tool, [q("sleep:0.2"), q("sleep:0.01"), q("sleep:0.1")])

    assert [r.id for r in envelope.results] == [1, 2, 3]
    assert [r.data["pattern"] for r in envelope.results] == ["sleep:0.2", "sleep:0.01", "sleep:0.1"]


@pytest.mark.asyncio
async def test_mixed_batch_isolates_failures():
    tool = ScriptedSearchTool()

    envelope = await BulkExecutor().run(tool, [q("found"), q("none"), q("fail")])

    ok, empty, failed = envelope.results
    assert ok.status == "hasResults"
    assert empty.status == "empty"
    assert failed.status == "error"
    assert failed.errorCode == "commandExecutionFailed"
    assert failed.error == "rg exited with code 2."
    assert envelope.instructions == "3 results: 1 hasResults, 1 empty, 1 error."


@pytest.mark.asyncio
async def test_path_errors_keep_their_two_hint_lines():
    envelope = await BulkExecutor().run(ScriptedSearchTool(), [q("escape")])

    result = envelope.results[0]
    assert result.errorCode == "pathValidationFailed"
    assert result.hints == ["Current working directory: /w", "Try: /w/x"]


@pytest.mark.asyncio
async def test_invalid_query_only_fails_itself():
    tool = ScriptedSearchTool()

    envelope = await BulkExecutor().run(tool, [q(""), q("ok"), {"pattern": "x", "bogus": 1}, {"tool": "local_find_files"}])

    statuses = [r.status for r in envelope.results]
    assert statuses == ["error", "hasResults", "error", "error"]
    assert {r.errorCode for r in envelope.results if r.status == "error"} == {"validationFailed"}
    assert envelope.results[0].error.startswith("Invalid query: pattern")


@pytest.mark.asyncio
async def test_unexpected_exception_becomes_generic_error():
    envelope = await BulkExecutor().run(ScriptedSearchTool(), [q("crash")])

    result = envelope.results[0]
    assert result.errorCode == "toolExecutionFailed"
    assert result.error == "Tool execution failed."
    assert "unexpected" not in json.dumps(result.to_dict())


@pytest.mark.asyncio
async def test_concurrency_is_bounded():
    tool = ScriptedSearchTool()

    await BulkExecutor(concurrency=2, local_max_queries=5).run(tool, [q("sleep:0.05")] * 5)

    assert tool.peak == 2


@pytest.mark.asyncio
async def test_query_timeout_is_per_query():
    tool = ScriptedSearchTool()

    envelope = await BulkExecutor(query_timeout=0.1).run(tool, [q("sleep:5"), q("fast")])

    assert envelope.results[0].errorCode == "commandTimeout"
    assert envelope.results[1].status == "hasResults"


@pytest.mark.asyncio
async def test_cancel_one_query_leaves_siblings_running():
    tool = ScriptedSearchTool()
    executor = BulkExecutor(concurrency=3)

    running = asyncio.create_task(executor.run(tool, [q("one"), q("block"), q("three")]))
    await asyncio.wait_for(tool.started.wait(), timeout=5)
    assert executor.cancel(1)
    envelope = await asyncio.wait_for(running, timeout=5)

    assert [r.status for r in envelope.results] == ["hasResults", "error", "hasResults"]
    assert envelope.results[1].errorCode == "queryCancelled"
    assert not executor.cancel(1)


@pytest.mark.asyncio
async def test_narrative_fields_are_echoed_and_hints_never_blank():
    envelope = await BulkExecutor().run(ScriptedSearchTool(), [q("none", researchGoal="locate config loader")])

    result = envelope.results[0]
    assert result.researchGoal == "locate config loader"
    assert result.hints and all(h.strip() for h in result.hints)


def test_extract_queries_shapes():
    assert extract_queries({"queries": [{"a": 1}]}) == [{"a": 1}]
    assert extract_queries({"pattern": "x"}) == [{"pattern": "x"}]
    assert extract_queries([{"a": 1}, {"b": 2}]) == [{"a": 1}, {"b": 2}]
    assert extract_queries({}) == []
    with pytest.raises(BatchValidationError):
        extract_queries({"queries": "nope"})


def test_instructions_singular():
    from codenav.models import QueryResult

    assert build_instructions([QueryResult(id=1, status="empty")]) == "1 result: 0 hasResults, 1 empty, 0 error."


@pytest.mark.asyncio
async def test_tool_execute_returns_json_envelope():
    payload = await ScriptedSearchTool().execute(json.dumps({"queries": [{"pattern": "hello"}]}))

    envelope = json.loads(payload)
    assert envelope["results"][0]["status"] == "hasResults"
    assert envelope["instructions"].startswith("1 result")
