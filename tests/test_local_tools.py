"""Tests for the ripgrep and find backed tools."""
import json
import os
import shutil

import pytest

from codenav.bulk import BulkExecutor
from codenav.tools.builtin.find_files import FindFilesTool
from codenav.tools.builtin.local_search import LocalSearchTool, parse_rg_json
from codenav.tools.context import tool_context

needs_rg = pytest.mark.skipif(shutil.which("rg") is None, reason="ripgrep not installed")
needs_find = pytest.mark.skipif(os.name == "nt" or shutil.which("find") is None, reason="find not available")


def rg_event(kind, path, line, text, submatches=()):
    data = {"path": {"text": path}, "lines": {"text": text}, "line_number": line}
    if kind == "match":
        data["submatches"] = [{"match": {"text": m[0]}, "start": m[1], "end": m[1] + len(m[0])} for m in submatches]
    return json.dumps({"type": kind, "data": data})


def test_parse_rg_json_groups_matches_and_context():
    output = "\n".join([
        json.dumps({"type": "begin", "data": {"path": {"text": "/w/a.py"}}}),
        rg_event("match", "/w/a.py", 1, "def helper(x):\n", [("helper", 4)]),
        rg_event("context", "/w/a.py", 2, "    return x\n"),
        rg_event("match", "/w/b.py", 7, "helper(helper)\n", [("helper", 0), ("helper", 7)]),
        json.dumps({"type": "summary", "data": {}}),
        '{"type": "match", "data": {"path"',
    ])

    files = parse_rg_json(output)

    assert list(files) == ["/w/a.py", "/w/b.py"]
    assert files["/w/a.py"][0] == {"line": 1, "text": "def helper(x):", "column": 5, "matchCount": 1}
    assert files["/w/a.py"][1]["context"] is True
    assert files["/w/b.py"][0]["matchCount"] == 2


def test_parse_rg_json_truncates_long_lines():
    output = rg_event("match", "/w/min.js", 1, "x" * 1000, [("x", 0)])
    entry = parse_rg_json(output, max_chars=50)["/w/min.js"][0]
    assert entry["text"] == "x" * 50 + "..."


@pytest.fixture
def search_tree(workspace):
    (workspace / "src").mkdir()
    (workspace / "src" / "a.py").write_text("def helper():\n    pass\n")
    (workspace / "src" / "b.py").write_text("helper()\nhelper()\nhelper()\n")
    (workspace / "README.md").write_text("nothing to see\n")
    return workspace


async def run_tool(tool, root, queries):
    with tool_context({"work_path": str(root)}):
        return await BulkExecutor().run(tool, queries)


@needs_rg
@pytest.mark.asyncio
async def test_local_search_groups_by_file(search_tree):
    envelope = await run_tool(LocalSearchTool(), search_tree, [{"pattern": "helper"}])

    result = envelope.results[0]
    assert result.status == "hasResults"
    files = result.data["files"]
    assert [f["path"] for f in files] == [os.path.join("src", "a.py"), os.path.join("src", "b.py")]
    assert files[1]["matchCount"] == 3
    assert result.data["totalMatches"] == 4
    assert files[0]["matches"][0]["line"] == 1
    assert any("lineHint=1" in hint for hint in result.hints)


@needs_rg
@pytest.mark.asyncio
async def test_local_search_mixed_batch(search_tree):
    envelope = await run_tool(LocalSearchTool(), search_tree, [
        {"pattern": "helper", "include": ["*.md"]},
        {"pattern": "no_such_token_anywhere"},
        {"pattern": "helper", "path": "../../etc"},
    ])

    assert [r.status for r in envelope.results] == ["empty", "empty", "error"]
    assert envelope.results[2].errorCode == "pathValidationFailed"
    assert envelope.instructions == "3 results: 0 hasResults, 2 empty, 1 error."


@needs_rg
@pytest.mark.asyncio
async def test_local_search_pages_files_and_matches(search_tree):
    envelope = await run_tool(LocalSearchTool(), search_tree, [
        {"pattern": "helper", "filesPerPage": 1, "filePageNumber": 2, "matchesPerPage": 1},
    ])

    data = envelope.results[0].data
    assert [f["path"] for f in data["files"]] == [os.path.join("src", "b.py")]
    assert len(data["files"][0]["matches"]) == 1
    assert data["files"][0]["matchesTruncated"] is True
    assert data["pagination"]["currentPage"] == 2
    assert data["pagination"]["totalPages"] == 2


@needs_rg
@pytest.mark.asyncio
async def test_local_search_files_only_and_literal_pattern(search_tree):
    (search_tree / "regex.txt").write_text("price is $5.00 (approx)\n")

    envelope = await run_tool(LocalSearchTool(), search_tree, [
        {"pattern": "helper", "filesOnly": True},
        {"pattern": "$5.00 (approx)", "fixedString": True},
    ])

    listed, literal = envelope.results
    assert [f["path"] for f in listed.data["files"]] == [os.path.join("src", "a.py"), os.path.join("src", "b.py")]
    assert "totalMatches" not in listed.data
    assert literal.data["files"][0]["path"] == "regex.txt"


@needs_rg
@pytest.mark.asyncio
async def test_local_search_bad_regex_is_structured_error(search_tree):
    envelope = await run_tool(LocalSearchTool(), search_tree, [{"pattern": "([unclosed"}])

    result = envelope.results[0]
    assert result.errorCode == "commandExecutionFailed"
    assert "\n" not in result.error


@pytest.fixture
def find_tree(workspace):
    (workspace / "pkg").mkdir()
    (workspace / "node_modules").mkdir()
    (workspace / "a.py").write_text("print('a')\n")
    (workspace / "pkg" / "b.py").write_text("")
    (workspace / "node_modules" / "c.py").write_text("")
    (workspace / "notes.txt").write_text("n")
    return workspace


@needs_find
@pytest.mark.asyncio
async def test_find_files_by_name_with_pruned_dirs(find_tree):
    envelope = await run_tool(FindFilesTool(), find_tree, [
        {"names": ["*.py"], "excludeDir": ["node_modules"], "type": "f"},
    ])

    data = envelope.results[0].data
    assert [f["path"] for f in data["files"]] == ["a.py", os.path.join("pkg", "b.py")]


@needs_find
@pytest.mark.asyncio
async def test_find_files_details_and_pagination(find_tree):
    envelope = await run_tool(FindFilesTool(), find_tree, [
        {"name": "*.py", "details": True, "filesPerPage": 1},
    ])

    result = envelope.results[0]
    assert result.data["totalFiles"] == 3
    assert result.data["pagination"]["hasMore"]
    entry = result.data["files"][0]
    assert entry["path"] == "a.py"
    assert entry["size"] == len("print('a')\n")
    assert entry["isDirectory"] is False
    assert any("filePageNumber=2" in hint for hint in result.hints)


@needs_find
@pytest.mark.asyncio
async def test_find_files_limit_and_empty(find_tree):
    envelope = await run_tool(FindFilesTool(), find_tree, [
        {"name": "*.py", "limit": 1},
        {"name": "*.rs"},
        {"path": "notes.txt"},
    ])

    limited, empty, not_dir = envelope.results
    assert limited.data["totalFiles"] == 1
    assert any("limit" in hint for hint in limited.hints)
    assert empty.status == "empty"
    assert not_dir.errorCode == "pathValidationFailed"


@needs_rg
@pytest.mark.asyncio
async def test_local_search_context_only_window_still_succeeds(search_tree):
    envelope = await run_tool(LocalSearchTool(), search_tree, [
        {"pattern": "pass", "contextLines": 1, "matchesPerPage": 1},
    ])

    result = envelope.results[0]
    assert result.status == "hasResults"
    shown = result.data["files"][0]["matches"]
    assert shown == [{"line": 1, "text": "def helper():", "context": True}]
    assert not any("lsp_goto_definition(" in hint for hint in result.hints)


@pytest.fixture
def secret_tree(search_tree):
    (search_tree / ".env").write_text("HELPER_TOKEN=helper\n")
    (search_tree / ".git").mkdir()
    (search_tree / ".git" / "config").write_text("[remote] helper\n")
    (search_tree / "deploy.pem").write_text("helper\n")
    return search_tree


@needs_rg
@pytest.mark.asyncio
async def test_local_search_never_returns_sensitive_files(secret_tree):
    envelope = await run_tool(LocalSearchTool(), secret_tree, [
        {"pattern": "helper", "hidden": True, "noIgnore": True},
        {"pattern": "helper", "hidden": True, "noIgnore": True, "filesOnly": True},
    ])

    for result in envelope.results:
        paths = [f["path"] for f in result.data["files"]]
        assert paths == [os.path.join("src", "a.py"), os.path.join("src", "b.py")]


@needs_rg
@pytest.mark.asyncio
async def test_local_search_rejects_sensitive_search_path(secret_tree):
    envelope = await run_tool(LocalSearchTool(), secret_tree, [{"pattern": "helper", "path": ".git"}])

    assert envelope.results[0].errorCode == "pathValidationFailed"


@needs_find
@pytest.mark.asyncio
async def test_find_files_never_lists_sensitive_entries(secret_tree):
    envelope = await run_tool(FindFilesTool(), secret_tree, [{"name": "*"}])

    paths = {f["path"] for f in envelope.results[0].data["files"]}
    assert os.path.join("src", "a.py") in paths
    assert not {".env", ".git", os.path.join(".git", "config"), "deploy.pem"} & paths
