"""
Directory listing with filters, sorting and entry pagination.

Walks with os.scandir without following directory symlinks; sensitive
entries are left out as if they did not exist.
"""

import asyncio
import fnmatch
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from ...models import ViewStructureQuery
from ...pagination import paginate
from ...security.path_guard import PathGuard
from ..base import Tool, ToolOutcome
from ..config import get_section

logger = logging.getLogger(__name__)

_GLOB_CHARS = set("*?[")


@dataclass
class Entry:
    path: str  # relative to the listed directory, '/'-separated
    kind: str  # "file", "directory" or "symlink"
    size: int
    mtime: float

    @property
    def name(self) -> str:
        return self.path.rsplit("/", 1)[-1]

    @property
    def extension(self) -> str:
        if self.kind == "directory":
            return ""
        return os.path.splitext(self.name)[1].lower()

    def to_dict(self, details: bool) -> Dict[str, Any]:
        entry: Dict[str, Any] = {"path": self.path, "type": self.kind}
        if details:
            if self.kind != "directory":
                entry["size"] = self.size
            entry["modified"] = datetime.fromtimestamp(self.mtime, tz=timezone.utc).isoformat(timespec="seconds")
        return entry


def format_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{int(value)}{unit}" if unit == "B" else f"{value:.1f}{unit}"
        value /= 1024
    return f"{size}B"


def _name_matches(name: str, pattern: Optional[str]) -> bool:
    if not pattern:
        return True
    if _GLOB_CHARS & set(pattern):
        return fnmatch.fnmatch(name.lower(), pattern.lower())
    return pattern.lower() in name.lower()


def _wanted_extensions(query: ViewStructureQuery) -> List[str]:
    raw = list(query.extensions)
    if query.extension:
        raw.append(query.extension)
    return [item.lower() if item.startswith(".") else "." + item.lower() for item in raw if item]


def walk_entries(
    guard: PathGuard,
    base: str,
    max_depth: int,
    hidden: bool,
    max_entries: int,
) -> Tuple[List[Entry], int, bool]:
    """
    Breadth-first listing of `base` down to `max_depth` levels.

    Returns:
        (entries, unreadable directory count, whether max_entries cut the walk)
    """
    entries: List[Entry] = []
    skipped = 0
    queue: List[Tuple[str, str, int]] = [(base, "", 1)]
    while queue:
        directory, prefix, depth = queue.pop(0)
        try:
            with os.scandir(directory) as iterator:
                children = sorted(iterator, key=lambda item: item.name)
        except OSError as exc:
            logger.debug("Cannot list %s: %s", directory, exc)
            skipped += 1
            continue
        for child in children:
            if not hidden and child.name.startswith("."):
                continue
            if not guard.is_exposable(child.path):
                continue
            rel = prefix + child.name
            try:
                stat = child.stat(follow_symlinks=False)
            except OSError:
                skipped += 1
                continue
            if child.is_symlink():
                kind = "symlink"
            elif child.is_dir(follow_symlinks=False):
                kind = "directory"
            else:
                kind = "file"
            entries.append(Entry(path=rel, kind=kind, size=stat.st_size, mtime=stat.st_mtime))
            if len(entries) >= max_entries:
                return entries, skipped, True
            if kind == "directory" and depth < max_depth:
                queue.append((child.path, rel + "/", depth + 1))
    return entries, skipped, False


def sort_entries(entries: List[Entry], sort_by: str, reverse: bool) -> List[Entry]:
    if sort_by == "size":
        ordered = sorted(entries, key=lambda entry: (-entry.size, entry.path))
    elif sort_by == "time":
        ordered = sorted(entries, key=lambda entry: (-entry.mtime, entry.path))
    elif sort_by == "extension":
        ordered = sorted(entries, key=lambda entry: (entry.extension, entry.path))
    else:
        ordered = sorted(entries, key=lambda entry: entry.path.lower())
    if reverse:
        ordered.reverse()
    return ordered


class ViewStructureTool(Tool):
    """Lists a directory tree with type, name and extension filters."""

    query_model = ViewStructureQuery

    def __init__(self):
        super().__init__()
        self.name = "local_view_structure"
        self.description = (
            "List the contents of a workspace directory, optionally recursive, with filters, "
            "sorting (name, size, time, extension) and entry pagination."
        )

    async def run(self, query: ViewStructureQuery) -> ToolOutcome:
        settings = get_section("structure")
        guard = PathGuard.from_context()
        base = guard.confine(query.path, kind="directory")
        per_page = query.entriesPerPage or int(settings.get("entries_per_page", 20))
        if query.depth is not None:
            max_depth = query.depth
        elif query.recursive:
            max_depth = int(settings.get("recursive_depth", 5))
        else:
            max_depth = 1
        max_entries = int(settings.get("max_entries", 10000))

        walked, skipped, capped = await asyncio.to_thread(
            walk_entries, guard, str(base), max_depth, query.hidden, max_entries
        )

        extensions = _wanted_extensions(query)
        entries: List[Entry] = []
        for entry in walked:
            if query.filesOnly and entry.kind == "directory":
                continue
            if query.directoriesOnly and entry.kind != "directory":
                continue
            if not _name_matches(entry.name, query.pattern):
                continue
            if extensions and entry.extension not in extensions:
                continue
            entries.append(entry)

        entries = sort_entries(entries, query.sortBy, query.reverse)
        if query.limit:
            entries = entries[: query.limit]
        page_items, state = paginate(entries, query.entryPageNumber, per_page)

        files = [entry for entry in entries if entry.kind != "directory"]
        directories = len(entries) - len(files)
        total_size = sum(entry.size for entry in files)
        summary = f"{len(entries)} entries ({len(files)} files, {directories} dirs, {format_size(total_size)})"

        hints: List[str] = []
        if state.has_more:
            hints.append(f"Page {state.page}/{state.total_pages}; next: entryPageNumber={state.page + 1}")
        elif entries and not page_items:
            hints.append(f"entryPageNumber={state.page} is past the last page ({state.total_pages}).")
        if capped:
            hints.append(f"Listing stopped at {max_entries} entries; narrow path or lower depth.")
        if skipped:
            hints.append(f"{skipped} entries could not be read and were skipped.")

        data: Dict[str, Any] = {
            "path": guard.display(str(base)),
            "entries": [entry.to_dict(query.details) for entry in page_items],
            "summary": summary,
            "pagination": state.to_dict("entries"),
        }
        if capped:
            data["truncated"] = True
        return ToolOutcome(data=data, count=len(entries), hints=hints)
