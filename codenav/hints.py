"""
Result classification and hint selection.

Every settled query gets exactly one status (hasResults, empty, error) and a
short list of plain-text hints for that status. Blank hints are dropped; when
nothing is left the caller omits the field entirely.
"""

from typing import Dict, Iterable, List, Optional

from .errors import ToolError

MAX_HINTS = 8
MAX_ERROR_HINTS = 2

_LSP_NEXT = "Chain: pass uri and lineHint from these results to another lsp_* tool."

TOOL_HINTS: Dict[str, Dict[str, List[str]]] = {
    "local_search": {
        "hasResults": [
            "Next: pass path and a match line as uri/lineHint to lsp_goto_definition or lsp_find_references.",
            "Too many files? Add include/type filters or page with filePageNumber.",
        ],
        "empty": [
            "No matches. Broaden scope (noIgnore, hidden) or use fixedString.",
            "Drop include/exclude/type filters or search a parent path.",
            "Unsure of paths? Run local_find_files first.",
        ],
    },
    "local_find_files": {
        "hasResults": [
            "Next: search inside these files with local_search (path=<file>).",
        ],
        "empty": [
            "No files matched. Relax name/regex filters or raise maxDepth.",
            "Try iname for case-insensitive names or search a parent path.",
        ],
    },
    "local_fetch_content": {
        "hasResults": [
            "Next: lsp_goto_definition on a symbol from this content, using its line as lineHint.",
            "Large file? Use matchString or charOffset/charLength instead of reading it whole.",
        ],
        "empty": [
            "No content matched. Loosen matchString or drop matchStringIsRegex.",
            "Locate the text first with local_search.",
        ],
    },
    "local_view_structure": {
        "hasResults": [
            "Next: local_fetch_content or local_search on a listed path.",
            "Too many entries? Filter with pattern or extensions, or page with entryPageNumber.",
        ],
        "empty": [
            "Nothing listed. Set hidden=true, relax pattern/extension filters or add recursive.",
            "For a filtered search by name use local_find_files.",
        ],
    },
    "lsp_goto_definition": {
        "hasResults": [
            "Next: lsp_find_references or lsp_call_hierarchy at the definition line.",
            _LSP_NEXT,
        ],
        "empty": [
            "No definition returned. The symbol may be external or dynamically defined.",
            "Fall back to local_search for the symbol name.",
        ],
    },
    "lsp_find_references": {
        "hasResults": [
            "Entries with isDefinition=true are declarations.",
            _LSP_NEXT,
        ],
        "empty": [
            "No references. Drop includePattern/excludePattern or check lineHint.",
            "Fall back to local_search with wholeWord for text matches.",
        ],
    },
    "lsp_call_hierarchy": {
        "hasResults": [
            "Increase depth (max 3) for transitive calls; use page/charLength for large trees.",
            _LSP_NEXT,
        ],
        "empty": [
            "No calls found. Try the opposite direction or confirm the symbol is a function.",
            "Fall back to lsp_find_references for non-call usages.",
        ],
    },
}

ERROR_HINTS: Dict[str, List[str]] = {
    "validationFailed": ["Check parameter names, types and ranges."],
    "pathValidationFailed": ["Use a path under the workspace root."],
    "fileAccessFailed": ["Verify the path exists; list it with local_find_files."],
    "file_not_found": ["Verify the file exists; list it with local_find_files."],
    "fileTooLarge": ["Narrow the request or use pagination."],
    "paginationRequired": ["Pass charLength (and charOffset for later pages) or use matchString."],
    "commandExecutionFailed": ["Verify the pattern syntax; use fixedString for literal text."],
    "commandTimeout": ["Narrow the path or pattern and retry."],
    "lspUnavailable": ["No language server for this file type; use local_search instead."],
    "lspRequestFailed": ["Retry; if it persists use local_search instead."],
    "serverConfigInvalid": ["Fix the language server command in the configuration."],
    "queryCancelled": ["The query was cancelled; resubmit it if still needed."],
    "toolExecutionFailed": ["Retry the query; narrow its scope if it keeps failing."],
}


def classify(item_count: int, failed: bool = False) -> str:
    if failed:
        return "error"
    return "hasResults" if item_count > 0 else "empty"


def clean_hints(candidates: Iterable[Optional[str]], limit: int = MAX_HINTS) -> Optional[List[str]]:
    """Strip, drop blanks and duplicates, cap; None when nothing is left."""
    seen = set()
    cleaned: List[str] = []
    for item in candidates:
        if not isinstance(item, str):
            continue
        text = " ".join(item.split())
        if not text or text in seen:
            continue
        seen.add(text)
        cleaned.append(text)
        if len(cleaned) >= limit:
            break
    return cleaned or None


class HintEngine:
    def __init__(self, tool_hints: Optional[Dict[str, Dict[str, List[str]]]] = None, error_hints: Optional[Dict[str, List[str]]] = None):
        self.tool_hints = tool_hints if tool_hints is not None else TOOL_HINTS
        self.error_hints = error_hints if error_hints is not None else ERROR_HINTS

    def for_error(self, error: ToolError) -> Optional[List[str]]:
        candidates = list(error.hints) or list(self.error_hints.get(error.code, []))
        if not candidates:
            candidates = list(self.error_hints.get("toolExecutionFailed", []))
        return clean_hints(candidates, limit=MAX_ERROR_HINTS)

    def hints_for(
        self,
        tool: str,
        status: str,
        dynamic: Optional[Iterable[str]] = None,
        narrative: Optional[Dict[str, str]] = None,
    ) -> Optional[List[str]]:
        """
        Hints for a successful (hasResults / empty) outcome.

        Args:
            tool: Tool name
            status: "hasResults" or "empty"
            dynamic: Tool-produced hints (pagination, emitted identifiers); listed first
            narrative: Narrative fields of the query

        Returns:
            Cleaned hint list, or None when every candidate is blank
        """
        candidates: List[Optional[str]] = list(dynamic or [])
        candidates.extend(self.tool_hints.get(tool, {}).get(status, []))
        goal = (narrative or {}).get("researchGoal")
        if status == "empty" and goal:
            candidates.append(f"Rephrase the query toward the goal: {goal}")
        return clean_hints(candidates)
