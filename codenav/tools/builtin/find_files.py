import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List

from ...models import FindFilesQuery
from ...pagination import paginate
from ...security.commands import FindCommandBuilder, validate_command
from ...security.path_guard import PathGuard
from ...security.sandbox import build_env, spawn
from ..base import Tool, ToolOutcome
from ..config import get_section

logger = logging.getLogger(__name__)


def _entry_details(path: str) -> Dict[str, Any]:
    try:
        stat = os.lstat(path)
    except OSError as exc:
        logger.debug("stat failed for %s: %s", path, exc)
        return {}
    modified = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)
    return {
        "size": stat.st_size,
        "modified": modified.isoformat(timespec="seconds"),
        "isDirectory": os.path.isdir(path),
    }


class FindFilesTool(Tool):
    """Metadata-based file discovery (name, path, regex, size, age) with find."""

    query_model = FindFilesQuery

    def __init__(self):
        super().__init__()
        self.name = "local_find_files"
        self.description = (
            "Find files and directories under the workspace by name, path, regex, "
            "type, size or modification time."
        )

    async def run(self, query: FindFilesQuery) -> ToolOutcome:
        settings = get_section("find")
        guard = PathGuard.from_context()
        search_path = guard.confine(query.path, kind="directory")
        limit = query.limit or int(settings.get("limit", 1000))
        per_page = query.filesPerPage or int(settings.get("files_per_page", 20))

        command, args = FindCommandBuilder().from_query(query, search_path).build()
        validate_command(command, args)
        result = await spawn([command] + args, env=build_env(), cwd=str(search_path))
        # find exits 1 when some directories were unreadable but still prints the rest
        result.check(ok_codes=(0, 1))

        chunks = result.stdout.split(b"\x00")
        if result.truncated:
            # last entry may be cut mid-path
            chunks = chunks[:-1]
        found: List[str] = []
        for raw in chunks:
            if not raw:
                continue
            path = os.fsdecode(raw)
            if path == str(search_path) or not guard.is_exposable(path):
                continue
            found.append(path)
        found.sort()
        total_found = len(found)
        limited = found[:limit]

        entries: List[Dict[str, Any]] = []
        for path in limited:
            entry: Dict[str, Any] = {"path": guard.display(path)}
            entries.append(entry)
        page_items, state = paginate(entries, query.filePageNumber, per_page)
        if query.details:
            for entry in page_items:
                entry.update(_entry_details(os.path.join(guard.primary_root, entry["path"])))

        hints: List[str] = []
        if total_found > limit:
            hints.append(f"{total_found} entries found, kept the first {limit}; add filters or raise limit.")
        if state.has_more:
            hints.append(f"Page {state.page}/{state.total_pages}; next: filePageNumber={state.page + 1}")
        if result.truncated:
            hints.append("Output hit the size cap; results are partial. Narrow path or filters.")

        data: Dict[str, Any] = {
            "files": page_items,
            "totalFiles": len(entries),
            "pagination": state.to_dict("files"),
        }
        if result.truncated:
            data["truncated"] = True
        return ToolOutcome(data=data, count=len(entries), hints=hints)
