"""
Line-hint symbol resolution.

Callers rarely know the exact column of a symbol, only roughly which line it
is on (usually from a content search). The resolver turns
(symbolName, lineHint, orderHint) into an exact 0-indexed position.
"""

import re
from dataclasses import dataclass
from typing import List, Optional

from ..errors import SymbolNotFoundError

DEFAULT_SEARCH_RADIUS = 5

_NEWLINES = re.compile(r"\r?\n")


def split_lines(content: str) -> List[str]:
    return _NEWLINES.split(content)


def _is_identifier_char(char: str) -> bool:
    return ("0" <= char <= "9") or ("A" <= char <= "Z") or ("a" <= char <= "z") or char in "_$"


_JS_FAMILY = frozenset({"typescript", "typescriptreact", "javascript", "javascriptreact"})
_SLASH_COMMENTS = _JS_FAMILY | {"go", "rust", "c", "cpp", "java", "php", "csharp"}
_HASH_COMMENTS = frozenset({"python", "ruby"})
# ' only ever opens a one-character literal; anything else is a lifetime or label
_CHAR_LITERALS = frozenset({"rust", "go", "c", "cpp", "java", "csharp"})
_BACKTICK_STRINGS = _JS_FAMILY | {"go"}

_CHAR_LITERAL = re.compile(
    r"'(?:\\(?:u\{[0-9A-Fa-f]{1,6}\}|u[0-9A-Fa-f]{4}|x[0-9A-Fa-f]{2}|[0-7]{1,3}|.)|[^'\\])'"
)


def _starts_comment(line: str, index: int, language: Optional[str]) -> bool:
    char = line[index]
    if language is None:
        # unknown language: `#` only counts after whitespace (a#b, #[attr], this.#x)
        return line.startswith("//", index) or (char == "#" and (index == 0 or line[index - 1] in " \t"))
    if language in _HASH_COMMENTS:
        return char == "#"
    if language == "lua":
        return line.startswith("--", index)
    if language == "php" and char == "#" and not line.startswith("#[", index):
        return True
    return language in _SLASH_COMMENTS and line.startswith("//", index)


def _has_closing_quote(line: str, index: int) -> bool:
    position = index + 1
    while position < len(line):
        if line[position] == "\\":
            position += 2
            continue
        if line[position] == "'":
            return True
        position += 1
    return False


def _inside_string_or_comment(line: str, position: int, language: Optional[str] = None) -> bool:
    quote = None
    template_depth = 0
    block_comments = language is None or language in _SLASH_COMMENTS
    interpolates = language is None or language in _JS_FAMILY
    index = 0
    while index < position:
        char = line[index]
        if quote is not None:
            if char == "\\" and not (quote == "`" and language == "go"):
                index += 2
                continue
            if quote == "`" and interpolates and template_depth == 0 and line.startswith("${", index):
                template_depth = 1
                index += 2
                continue
            if template_depth > 0:
                # code inside ${...}
                if char == "{":
                    template_depth += 1
                elif char == "}":
                    template_depth -= 1
                index += 1
                continue
            if char == quote:
                quote = None
            index += 1
            continue

        if _starts_comment(line, index, language):
            return True
        if block_comments and line.startswith("/*", index):
            end = line.find("*/", index + 2)
            if end == -1 or end + 2 > position:
                return True
            index = end + 2
            continue
        if char == "'":
            if language in _CHAR_LITERALS:
                match = _CHAR_LITERAL.match(line, index)
                if match is None:
                    index += 1
                    continue
                if match.end() > position:
                    return True
                index = match.end()
                continue
            if language is None and not _has_closing_quote(line, index):
                # apostrophe or lifetime with nothing to close it
                index += 1
                continue
            quote = char
        elif char == '"':
            quote = char
        elif char == "`" and (language is None or language in _BACKTICK_STRINGS):
            quote = char
        index += 1
    if quote == "`" and template_depth > 0:
        return False
    return quote is not None


def find_occurrences(line: str, symbol: str, language: Optional[str] = None) -> List[int]:
    """
    Columns of whole-identifier occurrences outside strings and comments.

    `language` picks the comment and quote rules; without it a cautious
    mix of C-style and shell-style rules applies.
    """
    found: List[int] = []
    start = 0
    while True:
        index = line.find(symbol, start)
        if index == -1:
            return found
        end = index + len(symbol)
        starts_clean = index == 0 or not _is_identifier_char(line[index - 1])
        ends_clean = end >= len(line) or not _is_identifier_char(line[end])
        if starts_clean and ends_clean and not _inside_string_or_comment(line, index, language):
            found.append(index)
        start = index + 1


@dataclass(frozen=True)
class ResolvedSymbol:
    line: int  # 0-indexed
    character: int
    found_at_line: int  # 1-indexed
    line_offset: int
    line_content: str

    def position(self) -> dict:
        return {"line": self.line, "character": self.character}


class SymbolResolver:
    def __init__(self, search_radius: int = DEFAULT_SEARCH_RADIUS):
        if search_radius < 0:
            raise ValueError("search_radius must be >= 0")
        self.search_radius = search_radius

    def resolve(
        self,
        lines: List[str],
        symbol: str,
        line_hint: int,
        order_hint: int = 0,
        language: Optional[str] = None,
    ) -> ResolvedSymbol:
        """
        Find `symbol` on or near `line_hint` (1-indexed).

        The hinted line is checked first, picking the `order_hint`-th occurrence.
        Only when `order_hint` is 0 are nearby lines scanned, alternating
        above and below up to the search radius; an explicit `order_hint`
        pins the hinted line.

        Raises:
            SymbolNotFoundError: Line out of range or no matching occurrence
        """
        target = line_hint - 1
        if target < 0 or target >= len(lines):
            raise SymbolNotFoundError(
                symbol,
                line_hint,
                f"line {line_hint} is out of range (file has {len(lines)} lines).",
                self.search_radius,
            )

        occurrences = find_occurrences(lines[target], symbol, language)
        if order_hint < len(occurrences):
            return ResolvedSymbol(target, occurrences[order_hint], line_hint, 0, lines[target])
        if order_hint > 0:
            raise SymbolNotFoundError(
                symbol,
                line_hint,
                f"orderHint={order_hint} but line {line_hint} has {len(occurrences)} occurrence(s).",
                self.search_radius,
            )

        for offset in range(1, self.search_radius + 1):
            for delta in (-offset, offset):
                candidate = target + delta
                if candidate < 0 or candidate >= len(lines):
                    continue
                columns = find_occurrences(lines[candidate], symbol, language)
                if columns:
                    return ResolvedSymbol(candidate, columns[0], candidate + 1, delta, lines[candidate])

        raise SymbolNotFoundError(
            symbol,
            line_hint,
            f"not on the line or within +/-{self.search_radius} lines. Verify the symbol name and lineHint.",
            self.search_radius,
        )


def extract_context(lines: List[str], line: int, context_lines: int) -> dict:
    """Numbered text around 1-indexed `line`, clipped to the file."""
    if not lines:
        return {"content": "", "startLine": 1, "endLine": 1}
    line = min(max(1, line), len(lines))
    start = max(1, line - max(0, context_lines))
    end = min(len(lines), line + max(0, context_lines))
    numbered = []
    for number in range(start, end + 1):
        marker = ">" if number == line else " "
        numbered.append(f"{marker}{number:4d}| {lines[number - 1]}")
    return {"content": "\n".join(numbered), "startLine": start, "endLine": end}

