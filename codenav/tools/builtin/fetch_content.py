"""
Read a workspace file whole or in parts.

Files over the size threshold must be read through a char window or a
matchString filter. Matches are widened by context lines, overlapping ranges
are merged, and the gaps between ranges are marked with a separator line.
"""

import asyncio
import logging
import re
from typing import Any, Dict, List, Tuple

from ...errors import FileAccessError, FileTooLargeError, PaginationRequiredError, ValidationError
from ...lsp.resolver import split_lines
from ...models import FetchContentQuery
from ...pagination import apply_char_pagination
from ...security.path_guard import PathGuard
from ..base import Tool, ToolOutcome
from ..config import get_section

logger = logging.getLogger(__name__)

MAX_READ_BYTES = 10 * 1024 * 1024


def extract_matching_lines(
    lines: List[str],
    match_string: str,
    context_lines: int,
    is_regex: bool = False,
    case_sensitive: bool = False,
    max_matches: int = 50,
) -> Tuple[List[str], int, List[int]]:
    """
    Lines around each match of `match_string`.

    Returns:
        (selected lines with separators, total match count, 1-based lines of the kept matches)

    Raises:
        ValidationError: `is_regex` and the pattern does not compile
    """
    flags = 0 if case_sensitive else re.IGNORECASE
    if is_regex:
        try:
            pattern = re.compile(match_string, flags)
        except re.error as exc:
            raise ValidationError(f"Invalid regex pattern: {exc}")
    else:
        pattern = re.compile(re.escape(match_string), flags)

    hits = [index for index, line in enumerate(lines) if pattern.search(line)]
    total = len(hits)
    hits = hits[:max_matches]

    ranges: List[Tuple[int, int]] = []
    for index in hits:
        start = max(0, index - context_lines)
        end = min(len(lines) - 1, index + context_lines)
        if ranges and start <= ranges[-1][1] + 1:
            ranges[-1] = (ranges[-1][0], max(ranges[-1][1], end))
        else:
            ranges.append((start, end))

    selected: List[str] = []
    for number, (start, end) in enumerate(ranges):
        if number:
            omitted = start - ranges[number - 1][1] - 1
            selected.append(f"... [{omitted} lines omitted] ...")
        selected.extend(lines[start:end + 1])
    return selected, total, [hit + 1 for hit in hits]


class FetchContentTool(Tool):
    query_model = FetchContentQuery

    def __init__(self):
        super().__init__()
        self.name = "local_fetch_content"
        self.description = (
            "Read a file under the workspace: whole, filtered to lines around matchString, "
            "or in charOffset/charLength windows for large files."
        )

    async def run(self, query: FetchContentQuery) -> ToolOutcome:
        settings = get_section("fetch")
        guard = PathGuard.from_context()
        path = guard.confine(query.path, kind="file")
        display = guard.display(str(path))
        max_kb = int(settings.get("max_file_kb", 100))
        max_chars = int(settings.get("max_output_chars", 10000))

        try:
            size = path.stat().st_size
        except OSError as exc:
            raise FileAccessError(f"Cannot read '{display}': {exc.strerror}")
        if size > MAX_READ_BYTES:
            raise FileTooLargeError(f"{display} is {size} bytes; limit is {MAX_READ_BYTES}.")
        if size > max_kb * 1024 and query.charLength is None and query.matchString is None:
            raise FileTooLargeError(
                f"{display} is {size // 1024}KB; whole-file reads are limited to {max_kb}KB.",
                hints=[f"Use matchString to pull matching sections, or charLength={max_chars} to page through it."],
            )

        try:
            text = await asyncio.to_thread(path.read_text, encoding="utf-8", errors="replace")
        except OSError as exc:
            raise FileAccessError(f"Cannot read '{display}': {exc.strerror}")
        lines = split_lines(text)
        data: Dict[str, Any] = {"path": display, "totalLines": len(lines)}
        hints: List[str] = []
        partial = False

        if query.matchString is not None:
            context = query.matchStringContextLines
            if context is None:
                context = int(settings.get("context_lines", 5))
            max_matches = int(settings.get("max_matches", 50))
            selected, total_matches, match_lines = extract_matching_lines(
                lines,
                query.matchString,
                context,
                is_regex=query.matchStringIsRegex,
                case_sensitive=query.matchStringCaseSensitive,
                max_matches=max_matches,
            )
            data["matchCount"] = total_matches
            if not total_matches:
                data["content"] = ""
                return ToolOutcome(data=data, count=0, hints=[f"No lines match '{query.matchString}'."])
            data["matchLines"] = match_lines
            if total_matches > max_matches:
                hints.append(f"{total_matches} matches; showing the first {max_matches}. Refine matchString.")
            content = "\n".join(selected)
            partial = True
        else:
            content = text

        if not content.strip():
            data["content"] = ""
            return ToolOutcome(data=data, count=0, hints=["File is empty."])

        char_length = query.charLength
        if char_length is None and len(content) > max_chars:
            if query.matchString is None:
                raise PaginationRequiredError(
                    f"{display} has {len(content)} characters; output is limited to {max_chars}.",
                    hints=[f"Add charLength={max_chars} (charOffset=0) to page through it, or use matchString."],
                )
            char_length = max_chars
            hints.append(f"Matched content exceeds {max_chars} characters; paged with charLength={max_chars}.")

        if char_length is not None or query.charOffset:
            window = apply_char_pagination(content, query.charOffset, char_length)
            data["pagination"] = window.to_dict()
            content = window.content
            partial = partial or window.has_more or window.offset > 0
            if window.has_more:
                hints.append(f"Next: charOffset={window.next_offset}, charLength={window.window}")

        data["content"] = content
        data["contentLength"] = len(content)
        data["isPartial"] = partial
        return ToolOutcome(data=data, count=1 if content else 0, hints=hints)
