"""
Argument-vector builders for the search collaborators.

Builders only ever produce flat argv lists; nothing here is joined into a
shell command line. `validate_command` re-checks every vector against a
per-command flag allowlist before it reaches the sandbox.
"""

import os
import re
import sys
from pathlib import Path
from typing import List, Optional, Set, Tuple

from ..errors import ValidationError
from ..models import FindFilesQuery, LocalSearchQuery
from .sandbox import validate_args

_REGEX_SPECIAL = re.compile(r"[.*+?^${}()|\[\]\\]")

RG_FLAGS: Set[str] = {
    "-F", "-P", "-s", "-i", "-S", "-w", "-n", "--column", "-l", "-c",
    "--no-ignore", "--hidden", "-L", "-U", "--json", "--stats",
    "--no-messages", "--no-config",
}

RG_FLAGS_WITH_VALUES: Set[str] = {
    "-g", "--glob", "-A", "-B", "-C", "-m", "-t", "--type", "-T",
    "--type-not", "--sort", "--sortr", "--max-filesize", "--color",
    "--max-columns",
}

FIND_DISALLOWED: Set[str] = {
    "-delete", "-exec", "-execdir", "-ok", "-okdir", "-printf", "-fprintf",
    "-fprint", "-fprint0", "-fls", "-ls",
}

FIND_TOKENS: Set[str] = {
    "-O3", "-E", "-empty", "-prune", "-print0", "(", ")", "-o",
}

FIND_TOKENS_WITH_VALUES: Set[str] = {
    "-maxdepth", "-mindepth", "-type", "-name", "-iname", "-path", "-regex",
    "-regextype", "-size", "-mtime", "-mmin",
}


def escape_literal(pattern: str) -> str:
    """Escape regex metacharacters so the result matches `pattern` literally."""
    return _REGEX_SPECIAL.sub(lambda match: "\\" + match.group(0), pattern)


def resolve_rg_executable() -> str:
    override = os.environ.get("RG_EXE") or os.environ.get("RIPGREP_EXE")
    if override:
        return override
    return "rg"


class _CommandBuilder:
    def __init__(self, command: str):
        self.command = command
        self.args: List[str] = []

    def add_flag(self, flag: str) -> "_CommandBuilder":
        self.args.append(flag)
        return self

    def add_option(self, flag: str, value) -> "_CommandBuilder":
        self.args.extend([flag, str(value)])
        return self

    def add_arg(self, value: str) -> "_CommandBuilder":
        self.args.append(str(value))
        return self

    def build(self) -> Tuple[str, List[str]]:
        return self.command, list(self.args)

    def argv(self) -> List[str]:
        return [self.command] + list(self.args)


class RipgrepCommandBuilder(_CommandBuilder):
    def __init__(self, executable: Optional[str] = None):
        super().__init__(executable or resolve_rg_executable())

    def from_query(self, query: LocalSearchQuery, search_path: Path, matches_per_file: Optional[int] = None) -> "RipgrepCommandBuilder":
        if query.filesOnly:
            self.add_flag("-l")
        else:
            self.add_flag("--json")
            self.add_flag("-n")
            self.add_flag("--column")
        self.add_flag("--no-config")
        self.add_option("--color", "never")
        self.add_option("--sort", "path")

        if query.fixedString:
            self.add_flag("-F")
        elif query.perlRegex:
            self.add_flag("-P")

        if query.caseSensitive:
            self.add_flag("-s")
        elif query.caseInsensitive:
            self.add_flag("-i")
        else:
            self.add_flag("-S")

        if query.wholeWord:
            self.add_flag("-w")
        if query.type:
            self.add_option("-t", query.type)
        for glob in query.include:
            self.add_option("-g", glob)
        for glob in query.exclude:
            self.add_option("-g", glob if glob.startswith("!") else f"!{glob}")
        for directory in query.excludeDir:
            self.add_option("-g", f"!{directory.strip('/')}/")
        if query.noIgnore:
            self.add_flag("--no-ignore")
        if query.hidden:
            self.add_flag("--hidden")
        if query.followSymlinks:
            self.add_flag("-L")
        if query.contextLines and not query.filesOnly:
            self.add_option("-C", query.contextLines)
        if matches_per_file and not query.filesOnly:
            self.add_option("-m", matches_per_file)

        # "--" keeps patterns starting with "-" from being parsed as flags.
        self.add_arg("--")
        self.add_arg(query.pattern)
        self.add_arg(str(search_path))
        return self

    def symbol_references(self, symbol: str, search_path: Path) -> "RipgrepCommandBuilder":
        self.add_flag("--json")
        self.add_flag("--no-config")
        self.add_flag("-w")
        self.add_flag("-s")
        self.add_option("--sort", "path")
        self.add_arg("--")
        self.add_arg(escape_literal(symbol))
        self.add_arg(str(search_path))
        return self


def _parse_age(value: str) -> Tuple[str, int]:
    amount = int(value[:-1])
    unit = value[-1]
    if unit == "d":
        return "-mtime", amount
    if unit == "h":
        return "-mmin", amount * 60
    return "-mmin", amount


class FindCommandBuilder(_CommandBuilder):
    def __init__(self):
        super().__init__("find")
        self.is_linux = sys.platform.startswith("linux")
        self.is_macos = sys.platform == "darwin"

    def from_query(self, query: FindFilesQuery, search_path: Path) -> "FindCommandBuilder":
        if os.name == "nt":
            raise ValidationError("File discovery with find is not supported on Windows.")
        if self.is_macos and query.regex:
            self.add_flag("-E")
        if self.is_linux:
            self.add_flag("-O3")
        self.add_arg(str(search_path))
        if query.maxDepth is not None:
            self.add_option("-maxdepth", query.maxDepth)
        if query.minDepth is not None:
            self.add_option("-mindepth", query.minDepth)
        if query.excludeDir:
            self._exclude_dirs(query.excludeDir)
            # prune block OR the filters below
            self.add_arg("-o")
        self._filters(query)
        self.add_flag("-print0")
        return self

    def _exclude_dirs(self, directories: List[str]) -> None:
        self.add_arg("(")
        for index, directory in enumerate(directories):
            name = directory.strip("/")
            if index > 0:
                self.add_arg("-o")
            self.add_option("-path", f"*/{name}")
            self.add_arg("-o")
            self.add_option("-path", f"*/{name}/*")
        self.add_arg(")")
        self.add_flag("-prune")

    def _filters(self, query: FindFilesQuery) -> None:
        if query.type:
            self.add_option("-type", query.type)
        if len(query.names) == 1:
            self.add_option("-name", query.names[0])
        elif query.names:
            self.add_arg("(")
            for index, name in enumerate(query.names):
                if index > 0:
                    self.add_arg("-o")
                self.add_option("-name", name)
            self.add_arg(")")
        elif query.name:
            self.add_option("-name", query.name)
        if query.iname:
            self.add_option("-iname", query.iname)
        if query.pathPattern:
            self.add_option("-path", query.pathPattern)
        if query.regex:
            if self.is_linux:
                self.add_option("-regextype", "posix-extended")
            self.add_option("-regex", query.regex)
        if query.empty:
            self.add_flag("-empty")
        if query.sizeGreater:
            self.add_option("-size", f"+{query.sizeGreater}")
        if query.sizeLess:
            self.add_option("-size", f"-{query.sizeLess}")
        if query.modifiedWithin:
            flag, amount = _parse_age(query.modifiedWithin)
            self.add_option(flag, f"-{amount}")
        if query.modifiedBefore:
            flag, amount = _parse_age(query.modifiedBefore)
            self.add_option(flag, f"+{amount}")


def _validate_rg_args(args: List[str]) -> None:
    index = 0
    while index < len(args):
        arg = args[index]
        if arg == "--":
            # pattern and path follow
            if len(args) - index - 1 < 2:
                raise ValidationError("rg requires a pattern and a path after '--'.")
            return
        if arg in RG_FLAGS:
            index += 1
            continue
        if arg in RG_FLAGS_WITH_VALUES:
            if index + 1 >= len(args):
                raise ValidationError(f"rg option '{arg}' requires a value.")
            index += 2
            continue
        raise ValidationError(f"rg option '{arg}' is not allowed.")
    raise ValidationError("rg arguments must end with '--', a pattern and a path.")


def _validate_find_args(args: List[str]) -> None:
    index = 0
    seen_path = False
    while index < len(args):
        arg = args[index]
        if arg in FIND_DISALLOWED:
            raise ValidationError(f"find operator '{arg}' is not allowed.")
        if arg in FIND_TOKENS:
            index += 1
            continue
        if arg in FIND_TOKENS_WITH_VALUES:
            if index + 1 >= len(args):
                raise ValidationError(f"find operator '{arg}' requires a value.")
            index += 2
            continue
        if not seen_path and not arg.startswith("-"):
            seen_path = True
            index += 1
            continue
        raise ValidationError(f"find operator '{arg}' is not allowed.")


def validate_command(command: str, args: List[str]) -> None:
    """
    Reject commands and flags outside the allowlists.

    Raises:
        ValidationError: Unknown command, disallowed flag or malformed argument
    """
    validate_args([command] + list(args))
    name = os.path.basename(command)
    if name.lower().endswith(".exe"):
        name = name[:-4]
    if name == "rg" or command == resolve_rg_executable():
        _validate_rg_args(args)
    elif name == "find":
        _validate_find_args(args)
    else:
        raise ValidationError(f"Command '{name}' is not allowed. Allowed commands: rg, find")
