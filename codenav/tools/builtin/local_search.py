"""
Content search over the workspace with ripgrep.

The query is turned into an allowlisted rg argv, run through the sandbox,
and rg's JSON event stream is grouped per file and paginated.
"""

import json
import logging
from typing import Any, Dict, List

from ...models import LocalSearchQuery
from ...pagination import paginate
from ...security.commands import RipgrepCommandBuilder, validate_command
from ...security.path_guard import PathGuard
from ...security.sandbox import build_env, spawn
from ..base import Tool, ToolOutcome
from ..config import get_section

logger = logging.getLogger(__name__)


def _text_of(field: Dict[str, Any]) -> str:
    if "text" in field:
        return field["text"]
    return "<binary>"


def _truncate(text: str, limit: int) -> str:
    text = text.rstrip("\r\n")
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def parse_rg_json(output: str, max_chars: int = 400) -> Dict[str, List[Dict[str, Any]]]:
    """Group rg --json match/context events by file path, in output order."""
    files: Dict[str, List[Dict[str, Any]]] = {}
    for raw_line in output.splitlines():
        if not raw_line.startswith("{"):
            continue
        try:
            event = json.loads(raw_line)
        except ValueError:
            # last line may be cut by the output cap
            continue
        kind = event.get("type")
        if kind not in ("match", "context"):
            continue
        body = event.get("data", {})
        path = _text_of(body.get("path", {}))
        entry: Dict[str, Any] = {
            "line": body.get("line_number"),
            "text": _truncate(_text_of(body.get("lines", {})), max_chars),
        }
        if kind == "match":
            submatches = body.get("submatches") or []
            if submatches:
                entry["column"] = submatches[0].get("start", 0) + 1
            entry["matchCount"] = len(submatches)
        else:
            entry["context"] = True
        files.setdefault(path, []).append(entry)
    return files


class LocalSearchTool(Tool):
    query_model = LocalSearchQuery

    def __init__(self):
        super().__init__()
        self.name = "local_search"
        self.description = (
            "Search file contents under the workspace with ripgrep. "
            "Returns matches grouped by file with line numbers for follow-up LSP calls."
        )

    async def run(self, query: LocalSearchQuery) -> ToolOutcome:
        settings = get_section("search")
        guard = PathGuard.from_context()
        search_path = guard.confine(query.path)
        files_per_page = query.filesPerPage or int(settings.get("files_per_page", 10))
        matches_per_page = query.matchesPerPage or int(settings.get("matches_per_page", 10))
        max_chars = int(settings.get("max_match_chars", 400))

        command, args = RipgrepCommandBuilder().from_query(query, search_path).build()
        validate_command(command, args)
        result = await spawn([command] + args, env=build_env(), cwd=guard.primary_root)
        result.check(ok_codes=(0, 1))

        if query.filesOnly:
            paths = sorted({line.strip() for line in result.text.splitlines() if line.strip()})
            paths = [path for path in paths if guard.is_exposable(path)]
            files = [{"path": guard.display(path)} for path in paths]
        else:
            grouped = parse_rg_json(result.text, max_chars)
            files = []
            for path in sorted(grouped):
                if not guard.is_exposable(path):
                    continue
                entries = grouped[path]
                matches = [entry for entry in entries if not entry.get("context")]
                files.append({
                    "path": guard.display(path),
                    "matchCount": sum(entry.get("matchCount", 1) for entry in matches),
                    "matches": entries,
                })

        if query.maxFiles:
            files = files[: query.maxFiles]
        page_files, state = paginate(files, query.filePageNumber, files_per_page)

        hints: List[str] = []
        for item in page_files:
            matches = item.get("matches")
            if not matches:
                continue
            shown, match_state = paginate(matches, 1, matches_per_page)
            item["matches"] = shown
            if match_state.has_more:
                item["matchesTruncated"] = True
                hints.append(f"{item['path']}: {len(matches)} lines, showing {len(shown)}; narrow the pattern or set matchesPerPage.")
        first = next(
            (
                (item["path"], entry["line"])
                for item in page_files
                for entry in item.get("matches") or []
                if not entry.get("context")
            ),
            None,
        )
        if first:
            hints.append(f"lsp_goto_definition(uri={first[0]}, symbolName=<name>, lineHint={first[1]})")
        if state.has_more:
            hints.append(f"Page {state.page}/{state.total_pages}; next: filePageNumber={state.page + 1}")

        data: Dict[str, Any] = {
            "files": page_files,
            "totalFiles": len(files),
            "pagination": state.to_dict("files"),
        }
        if not query.filesOnly:
            data["totalMatches"] = sum(item.get("matchCount", 0) for item in files)
        if result.truncated:
            data["truncated"] = True
            hints.append("Output hit the size cap; results are partial. Narrow path or pattern.")
        return ToolOutcome(data=data, count=len(files), hints=hints)
