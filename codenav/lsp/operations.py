"""
Definition, reference and call-hierarchy lookups on top of a session manager.

Every path that goes in (the query's file) or comes back (locations returned
by the server) passes through the PathGuard; server results pointing outside
the allowed roots are dropped rather than read.
"""

import fnmatch
import json
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple

from ..errors import (
    FileTooLargeError,
    LspUnavailableError,
    PathValidationError,
)
from ..models import CallHierarchyQuery, FindReferencesQuery, GotoDefinitionQuery, LspQuery
from ..pagination import apply_char_pagination, paginate
from ..security.commands import RipgrepCommandBuilder, validate_command
from ..security.path_guard import PathGuard, uri_to_path
from ..security.sandbox import build_env, spawn
from ..tools.base import ToolOutcome
from ..tools.config import get_section
from .resolver import ResolvedSymbol, SymbolResolver, extract_context, find_occurrences, split_lines
from .servers import language_for_path
from .sessions import LspSession, LspSessionManager

logger = logging.getLogger(__name__)

MAX_FILE_BYTES = 5 * 1024 * 1024
MAX_REEXPORT_HOPS = 3

SYMBOL_KIND = {
    1: "file", 2: "module", 3: "namespace", 4: "package", 5: "class",
    6: "method", 7: "property", 8: "field", 9: "constructor", 10: "enum",
    11: "interface", 12: "function", 13: "variable", 14: "constant",
    15: "string", 16: "number", 17: "boolean", 18: "array", 19: "object",
    20: "key", 21: "null", 22: "enumMember", 23: "struct", 24: "event",
    25: "operator", 26: "typeParameter",
}

_REEXPORT_JS = re.compile(r"^\s*(import|export)\b.*\bfrom\s*['\"]")
_REEXPORT_PY = re.compile(r"^\s*(from\s+\S+\s+import\b|import\s+\S)")
_DECLARATION = r"\b(def|class|function|const|let|var|val|type|interface|struct|enum|fn|fun|func)\s+{name}\b"
_FROM_MODULE_JS = re.compile(r"\bfrom\s+['\"](.+?)['\"]\s*;?\s*$")
_FROM_MODULE_PY = re.compile(r"^\s*from\s+(\.+)([\w.]*)\s+import\b")
_EXPORT_JS = re.compile(r"^\s*export\b")
_JS_SOURCE_FOR = {".js": (".ts", ".tsx"), ".jsx": (".tsx",), ".mjs": (".mts",), ".cjs": (".cts",)}
_JS_EXTENSIONS = (".ts", ".tsx", ".js", ".jsx", ".mts", ".cts", ".mjs", ".cjs")


def is_reexport_line(text: str) -> bool:
    return bool(_REEXPORT_JS.match(text) or _REEXPORT_PY.match(text))


def _reexport_column(text: str, symbol: str, language: Optional[str] = None) -> Optional[int]:
    """Column of `symbol` in the imported-name part of an import/export line."""
    columns = find_occurrences(text, symbol, language)
    if not columns:
        return None
    from_match = re.search(r"\bfrom\b", text)
    if _REEXPORT_JS.match(text) and from_match:
        before = [column for column in columns if column < from_match.start()]
        return before[-1] if before else None
    import_match = re.search(r"\bimport\b", text)
    if import_match:
        after = [column for column in columns if column > import_match.start()]
        return after[0] if after else None
    return columns[0]


def module_path_candidates(source: Path, text: str) -> List[str]:
    """
    Files a relative import on `text` may point at, most likely first.

    Only relative specifiers are resolved; package imports need the server.
    """
    directory = os.path.dirname(str(source))
    js = _FROM_MODULE_JS.search(text)
    if js and js.group(1).startswith("."):
        base = os.path.normpath(os.path.join(directory, js.group(1)))
        stem, ext = os.path.splitext(base)
        if ext in _JS_SOURCE_FOR:
            return [stem + alt for alt in _JS_SOURCE_FOR[ext]] + [base]
        if ext in _JS_EXTENSIONS:
            return [base]
        return [base + alt for alt in _JS_EXTENSIONS] + [os.path.join(base, "index" + alt) for alt in _JS_EXTENSIONS]
    py = _FROM_MODULE_PY.match(text)
    if py:
        for _ in range(len(py.group(1)) - 1):
            directory = os.path.dirname(directory)
        base = os.path.join(directory, *[part for part in py.group(2).split(".") if part])
        return [base + ".py", os.path.join(base, "__init__.py")]
    return []


def _exported_column(line: str, symbol: str, language: Optional[str]) -> Optional[int]:
    if language == "python":
        pattern = r"^\s*(async\s+def|def|class)\s+{0}\b|^{0}\s*[:=]".format(re.escape(symbol))
        match = re.search(pattern, line)
        if not match:
            return None
        columns = find_occurrences(line, symbol, language)
        return columns[0] if columns else None
    if not _EXPORT_JS.match(line):
        return None
    columns = find_occurrences(line, symbol, language)
    return columns[0] if columns else None


@dataclass
class _Location:
    path: Path
    line: int  # 0-indexed
    character: int
    end_line: int
    end_character: int

    @property
    def key(self) -> Tuple[str, int, int]:
        return (str(self.path), self.line, self.character)


def _range_of(raw: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    return raw.get("targetSelectionRange") or raw.get("targetRange") or raw.get("range")


def _range_dict(rng: Dict[str, Any]) -> Dict[str, int]:
    start = rng.get("start", {})
    end = rng.get("end", start)
    return {
        "startLine": int(start.get("line", 0)) + 1,
        "startCharacter": int(start.get("character", 0)),
        "endLine": int(end.get("line", 0)) + 1,
        "endCharacter": int(end.get("character", 0)),
    }


class LspNavigator:
    def __init__(
        self,
        sessions: LspSessionManager,
        guard: PathGuard,
        search_radius: Optional[int] = None,
        settings: Optional[Dict[str, Any]] = None,
    ):
        self.sessions = sessions
        self.guard = guard
        self.settings = settings if settings is not None else get_section("lsp")
        radius = self.settings.get("search_radius", 5) if search_radius is None else search_radius
        self.resolver = SymbolResolver(int(radius))
        self._lines_cache: Dict[str, List[str]] = {}

    # -- files -------------------------------------------------------------

    def _read_text(self, path: Path) -> str:
        size = path.stat().st_size
        if size > MAX_FILE_BYTES:
            raise FileTooLargeError(f"{self.guard.display(str(path))} is {size} bytes; limit is {MAX_FILE_BYTES}.")
        return path.read_text(encoding="utf-8", errors="replace")

    def _lines(self, path: Path) -> List[str]:
        key = str(path)
        if key not in self._lines_cache:
            self._lines_cache[key] = split_lines(self._read_text(path))
        return self._lines_cache[key]

    def _open_target(self, query: LspQuery) -> Tuple[Path, str, ResolvedSymbol]:
        path = self.guard.confine(query.uri, kind="file")
        text = self._read_text(path)
        lines = split_lines(text)
        self._lines_cache[str(path)] = lines
        resolved = self.resolver.resolve(
            lines, query.symbolName, query.lineHint, query.orderHint, language_for_path(path)
        )
        return path, text, resolved

    def _language_id(self, path: Path) -> str:
        language = language_for_path(path)
        if language is None:
            raise LspUnavailableError(f"No language server for '{path.suffix or path.name}' files.")
        return language

    async def _open(self, session: LspSession, path: Path, text: Optional[str] = None) -> None:
        if text is None:
            text = self._read_text(path)
        await session.open_document(path, text, self._language_id(path))

    def _confined_locations(self, raw: Any) -> List[_Location]:
        if raw is None:
            return []
        items = raw if isinstance(raw, list) else [raw]
        locations: List[_Location] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            uri = item.get("targetUri") or item.get("uri")
            rng = _range_of(item)
            if not isinstance(uri, str) or not uri or not rng:
                continue
            local = uri_to_path(uri)
            if local is None:
                logger.debug("Dropping non-file location: %s", uri)
                continue
            path = Path(os.path.realpath(local))
            if not self.guard.is_exposable(str(path)):
                logger.debug("Dropping location outside allowed roots or sensitive: %s", path)
                continue
            start = rng.get("start", {})
            end = rng.get("end", start)
            locations.append(_Location(
                path=path,
                line=int(start.get("line", 0)),
                character=int(start.get("character", 0)),
                end_line=int(end.get("line", 0)),
                end_character=int(end.get("character", 0)),
            ))
        return locations

    def _location_dict(self, location: _Location, context_lines: int) -> Dict[str, Any]:
        entry: Dict[str, Any] = {
            "uri": self.guard.display(str(location.path)),
            "line": location.line + 1,
            "character": location.character,
        }
        try:
            lines = self._lines(location.path)
        except (OSError, FileTooLargeError):
            return entry
        context = extract_context(lines, location.line + 1, context_lines)
        entry.update(context)
        return entry

    def _line_text(self, location: _Location) -> str:
        try:
            lines = self._lines(location.path)
        except (OSError, FileTooLargeError):
            return ""
        return lines[location.line] if 0 <= location.line < len(lines) else ""

    # -- definition --------------------------------------------------------

    def _module_path_target(self, location: _Location, text: str, symbol: str) -> Optional[_Location]:
        """Exported declaration of `symbol` in the module an import line names."""
        for candidate in module_path_candidates(location.path, text):
            resolved = os.path.realpath(candidate)
            if not os.path.isfile(resolved) or not self.guard.is_exposable(resolved):
                continue
            if resolved == str(location.path):
                continue
            try:
                lines = self._lines(Path(resolved))
            except (OSError, FileTooLargeError):
                return None
            language = language_for_path(Path(resolved))
            for number, line in enumerate(lines):
                column = _exported_column(line, symbol, language)
                if column is not None:
                    return _Location(Path(resolved), number, column, number, column + len(symbol))
            return None
        return None

    async def _follow_reexports(
        self,
        session: LspSession,
        locations: List[_Location],
        symbol: str,
        origin: Tuple[str, int],
        pinned: bool,
    ) -> Tuple[List[_Location], int]:
        hops = 0
        seen: Set[Tuple[str, int]] = {origin}
        while locations and hops < MAX_REEXPORT_HOPS:
            first = locations[0]
            here = (str(first.path), first.line)
            if pinned and here == origin:
                break
            text = self._line_text(first)
            if not is_reexport_line(text):
                break
            column = _reexport_column(text, symbol, language_for_path(first.path))
            if column is None:
                break
            await self._open(session, first.path)
            raw = await session.definition(first.path, first.line, column)
            followed = [loc for loc in self._confined_locations(raw) if (str(loc.path), loc.line) != here]
            if not followed or (str(followed[0].path), followed[0].line) in seen:
                fallback = self._module_path_target(first, text, symbol)
                if fallback is not None and (str(fallback.path), fallback.line) not in seen:
                    locations = [fallback]
                    hops += 1
                break
            seen.add(here)
            locations = followed
            hops += 1
        return locations, hops

    async def goto_definition(self, query: GotoDefinitionQuery) -> ToolOutcome:
        context_lines = query.contextLines
        if context_lines is None:
            context_lines = int(self.settings.get("context_lines", 5))
        context_lines = min(context_lines, int(self.settings.get("max_context_lines", 20)))

        path, text, resolved = self._open_target(query)
        root = Path(self.guard.root_for(str(path)))
        async with self.sessions.acquire(root, path) as session:
            await self._open(session, path, text)
            raw = await session.definition(path, resolved.line, resolved.character)
            locations = self._confined_locations(raw)
            locations, hops = await self._follow_reexports(
                session,
                locations,
                query.symbolName,
                origin=(str(path), resolved.line),
                pinned=query.orderHint > 0,
            )

        entries = [self._location_dict(location, context_lines) for location in locations]
        data: Dict[str, Any] = {
            "symbolName": query.symbolName,
            "resolvedPosition": {
                "uri": self.guard.display(str(path)),
                "line": resolved.found_at_line,
                "character": resolved.character,
                "lineOffset": resolved.line_offset,
            },
            "locations": entries,
        }
        if hops:
            data["followedReexports"] = hops
        hints: List[str] = []
        if resolved.line_offset:
            hints.append(f"Symbol found at line {resolved.found_at_line}, not at lineHint {query.lineHint}.")
        if entries:
            first = entries[0]
            hints.append(
                f"lsp_find_references(uri={first['uri']}, symbolName={query.symbolName}, lineHint={first['line']})"
            )
        return ToolOutcome(data=data, count=len(entries), hints=hints)

    # -- references --------------------------------------------------------

    def _matches_filters(self, display_path: str, include: List[str], exclude: List[str]) -> bool:
        name = os.path.basename(display_path)
        if include and not any(fnmatch.fnmatch(display_path, g) or fnmatch.fnmatch(name, g) for g in include):
            return False
        if exclude and any(fnmatch.fnmatch(display_path, g) or fnmatch.fnmatch(name, g) for g in exclude):
            return False
        return True

    @staticmethod
    def _mark_definitions(references: List[_Location], definitions: List[_Location]) -> Set[int]:
        """Index of exactly one reference per distinct declaration."""
        flagged: Set[int] = set()
        for definition in {d.key: d for d in definitions}.values():
            exact = next(
                (i for i, ref in enumerate(references) if ref.key == definition.key and i not in flagged),
                None,
            )
            if exact is None:
                exact = next(
                    (
                        i for i, ref in enumerate(references)
                        if ref.path == definition.path and ref.line == definition.line and i not in flagged
                    ),
                    None,
                )
            if exact is not None:
                flagged.add(exact)
        return flagged

    async def _text_references(self, path: Path, query: FindReferencesQuery) -> Tuple[List[_Location], Set[int]]:
        root = Path(self.guard.root_for(str(path)))
        command, args = RipgrepCommandBuilder().symbol_references(query.symbolName, root).build()
        validate_command(command, args)
        result = await spawn([command] + args, env=build_env(), cwd=str(root))
        result.check(ok_codes=(0, 1))
        declaration = re.compile(_DECLARATION.format(name=re.escape(query.symbolName)))
        references: List[_Location] = []
        flagged: Set[int] = set()
        for line in result.text.splitlines():
            if not line.startswith("{"):
                continue
            try:
                message = json.loads(line)
            except ValueError:
                continue
            if message.get("type") != "match":
                continue
            body = message.get("data", {})
            match_path = Path(os.path.realpath(body.get("path", {}).get("text", "")))
            if not self.guard.is_exposable(str(match_path)):
                continue
            text = body.get("lines", {}).get("text", "")
            for sub in body.get("submatches", []):
                start = len(text.encode("utf-8")[: sub.get("start", 0)].decode("utf-8", errors="ignore"))
                references.append(_Location(
                    path=match_path,
                    line=int(body.get("line_number", 1)) - 1,
                    character=start,
                    end_line=int(body.get("line_number", 1)) - 1,
                    end_character=start + len(query.symbolName),
                ))
                if declaration.search(text):
                    flagged.add(len(references) - 1)
        if not query.includeDeclaration:
            references = [ref for i, ref in enumerate(references) if i not in flagged]
            flagged = set()
        return references, flagged

    async def find_references(self, query: FindReferencesQuery) -> ToolOutcome:
        per_page = query.referencesPerPage or int(self.settings.get("references_per_page", 20))
        per_page = min(per_page, int(self.settings.get("max_references_per_page", 50)))

        path, text, resolved = self._open_target(query)
        root = Path(self.guard.root_for(str(path)))
        source = "lsp"
        try:
            async with self.sessions.acquire(root, path) as session:
                await self._open(session, path, text)
                raw = await session.references(path, resolved.line, resolved.character, query.includeDeclaration)
                references = self._confined_locations(raw)
                flagged: Set[int] = set()
                if query.includeDeclaration:
                    definitions = self._confined_locations(
                        await session.definition(path, resolved.line, resolved.character)
                    )
                    flagged = self._mark_definitions(references, definitions)
        except LspUnavailableError as exc:
            logger.info("Falling back to text search for references: %s", exc.message)
            source = "text"
            references, flagged = await self._text_references(path, query)

        entries: List[Dict[str, Any]] = []
        seen: Set[Tuple[str, int, int]] = set()
        for index, location in sorted(enumerate(references), key=lambda item: item[1].key):
            if location.key in seen:
                continue
            seen.add(location.key)
            entry = self._location_dict(location, query.contextLines)
            if not self._matches_filters(entry["uri"], query.includePattern, query.excludePattern):
                continue
            entry["isDefinition"] = index in flagged
            entries.append(entry)

        page_items, state = paginate(entries, query.page, per_page)
        files = {entry["uri"] for entry in entries}
        data: Dict[str, Any] = {
            "symbolName": query.symbolName,
            "source": source,
            "references": page_items,
            "totalReferences": len(entries),
            "totalFiles": len(files),
            "pagination": state.to_dict("references"),
        }
        hints: List[str] = []
        if state.has_more:
            hints.append(f"Page {state.page}/{state.total_pages}; next: page={state.page + 1}")
        elif entries and not page_items:
            hints.append(f"page={state.page} is past the last page ({state.total_pages}).")
        if source == "text":
            hints.append("Text matches only (no language server); isDefinition marks declaration-looking lines.")
        return ToolOutcome(data=data, count=len(page_items), hints=hints)

    # -- call hierarchy ----------------------------------------------------

    def _item_location(self, item: Dict[str, Any]) -> Optional[_Location]:
        found = self._confined_locations({"uri": item.get("uri"), "range": item.get("selectionRange") or item.get("range")})
        return found[0] if found else None

    def _node(self, item: Dict[str, Any], location: _Location, ranges_key: str, ranges: List[Dict[str, Any]], context_lines: int) -> Dict[str, Any]:
        symbol = {
            "name": item.get("name", ""),
            "kind": SYMBOL_KIND.get(item.get("kind", 0), "unknown"),
        }
        if item.get("detail"):
            symbol["detail"] = item["detail"]
        location_entry = self._location_dict(location, context_lines)
        content = location_entry.pop("content", None)
        location_entry.pop("startLine", None)
        location_entry.pop("endLine", None)
        node: Dict[str, Any] = {
            "symbol": symbol,
            "location": location_entry,
            ranges_key: [_range_dict(rng) for rng in ranges if isinstance(rng, dict)],
            "children": [],
        }
        if content:
            node["content"] = content
        return node

    async def _expand(
        self,
        session: LspSession,
        item: Dict[str, Any],
        direction: str,
        remaining: int,
        visited: Set[str],
        context_lines: int,
    ) -> List[Dict[str, Any]]:
        if direction == "incoming":
            calls = await session.incoming_calls(item)
            peer_key, ranges_key = "from", "fromRanges"
        else:
            calls = await session.outgoing_calls(item)
            peer_key, ranges_key = "to", "toRanges"

        nodes: List[Dict[str, Any]] = []
        for call in calls or []:
            peer = call.get(peer_key) if isinstance(call, dict) else None
            if not isinstance(peer, dict):
                continue
            location = self._item_location(peer)
            if location is None:
                continue
            node = self._node(peer, location, ranges_key, call.get("fromRanges") or [], context_lines)
            key = f"{location.path}:{location.line}:{peer.get('name', '')}"
            if remaining > 1 and key not in visited:
                visited.add(key)
                node["children"] = await self._expand(session, peer, direction, remaining - 1, visited, context_lines)
            nodes.append(node)
        return nodes

    async def _prepare_items(self, session: LspSession, path: Path, resolved: ResolvedSymbol) -> List[Dict[str, Any]]:
        items = await session.prepare_call_hierarchy(path, resolved.line, resolved.character)
        if items:
            return [item for item in items if isinstance(item, dict)]
        # not a callable at this position: retry at its definition
        for location in self._confined_locations(await session.definition(path, resolved.line, resolved.character)):
            await self._open(session, location.path)
            items = await session.prepare_call_hierarchy(location.path, location.line, location.character)
            if items:
                return [item for item in items if isinstance(item, dict)]
        return []

    @staticmethod
    def _count_edges(nodes: List[Dict[str, Any]]) -> int:
        return sum(1 + LspNavigator._count_edges(node.get("children", [])) for node in nodes)

    async def call_hierarchy(self, query: CallHierarchyQuery) -> ToolOutcome:
        per_page = query.callsPerPage or int(self.settings.get("calls_per_page", 15))
        per_page = min(per_page, int(self.settings.get("max_calls_per_page", 30)))

        path, text, resolved = self._open_target(query)
        root = Path(self.guard.root_for(str(path)))
        async with self.sessions.acquire(root, path) as session:
            await self._open(session, path, text)
            items = await self._prepare_items(session, path, resolved)
            if not items:
                data = {"symbolName": query.symbolName, "direction": query.direction, "calls": []}
                return ToolOutcome(data=data, count=0, hints=[
                    f"No call hierarchy item at line {resolved.found_at_line}; check that {query.symbolName} is a function.",
                ])
            seed = items[0]
            seed_location = self._item_location(seed)
            if seed_location is None:
                raise PathValidationError("Call hierarchy item is outside the allowed roots.")
            visited = {f"{seed_location.path}:{seed_location.line}:{seed.get('name', '')}"}
            calls = await self._expand(session, seed, query.direction, query.depth, visited, query.contextLines)

        page_items, state = paginate(calls, query.page, per_page)
        seed_node = self._node(seed, seed_location, "ranges", [], query.contextLines)
        seed_node.pop("ranges", None)
        seed_node.pop("children", None)
        data: Dict[str, Any] = {
            "symbolName": query.symbolName,
            "item": seed_node,
            "direction": query.direction,
            "depth": query.depth,
            "calls": page_items,
            "totalEdges": self._count_edges(calls),
            "pagination": state.to_dict("calls"),
        }
        hints: List[str] = []
        if state.has_more:
            hints.append(f"Page {state.page}/{state.total_pages}; next: page={state.page + 1}")
        if query.charOffset is not None or query.charLength is not None:
            serialized = json.dumps(page_items, ensure_ascii=False)
            window = apply_char_pagination(serialized, query.charOffset, query.charLength)
            data.pop("calls")
            data["content"] = window.content
            data["charPagination"] = window.to_dict()
            if window.has_more:
                hints.append(f"More output: charOffset={window.next_offset}")
        return ToolOutcome(data=data, count=len(calls), hints=hints)
