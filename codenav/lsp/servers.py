import os
import re
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from ..errors import LspUnavailableError, ServerConfigError
from ..tools.config import get_section

SHELL_COMMANDS = frozenset({
    "sh", "bash", "zsh", "dash", "ksh", "mksh", "fish", "csh", "tcsh", "ash",
    "cmd", "powershell", "pwsh", "env", "busybox", "xargs", "eval", "exec",
    "sudo", "su", "doas", "nohup", "osascript", "wsl",
})

_SHELL_METACHARS = re.compile(r"[;|&$`<>\n\r]")

# interpreter -> flags or subcommands that run code given on the command line
INLINE_CODE_FLAGS: Dict[str, Tuple[str, ...]] = {
    "python": ("-c",),
    "node": ("-e", "--eval", "-p", "--print", "-r", "--require", "--import", "--loader", "--experimental-loader"),
    "perl": ("-e", "-E"),
    "ruby": ("-e",),
    "php": ("-r",),
    "deno": ("eval",),
    "bun": ("-e", "--eval", "-p", "--print"),
    "lua": ("-e",),
}

_INTERPRETER_ALIASES = re.compile(r"^(?:(python|pypy)[\d.]*w?|(nodejs)|(luajit)|(perl)[\d.]*|(ruby)[\d.]*|(php)[\d.]*)$")
_SHORT_CLUSTER = re.compile(r"^-[A-Za-z]+$")

# extension -> language id
LANGUAGE_BY_EXTENSION: Dict[str, str] = {
    ".py": "python",
    ".pyi": "python",
    ".ts": "typescript",
    ".tsx": "typescriptreact",
    ".mts": "typescript",
    ".cts": "typescript",
    ".js": "javascript",
    ".jsx": "javascriptreact",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".go": "go",
    ".rs": "rust",
    ".c": "c",
    ".h": "c",
    ".cc": "cpp",
    ".cpp": "cpp",
    ".hpp": "cpp",
    ".java": "java",
    ".rb": "ruby",
    ".php": "php",
    ".lua": "lua",
    ".cs": "csharp",
}

# language id -> server family sharing one process per root
SERVER_FAMILY: Dict[str, str] = {
    "typescriptreact": "typescript",
    "javascript": "typescript",
    "javascriptreact": "typescript",
    "cpp": "c",
}

DEFAULT_SERVERS: Dict[str, Tuple[str, ...]] = {
    "python": ("pylsp",),
    "typescript": ("typescript-language-server", "--stdio"),
    "go": ("gopls", "serve"),
    "rust": ("rust-analyzer",),
    "c": ("clangd",),
    "java": ("jdtls",),
    "ruby": ("solargraph", "stdio"),
    "php": ("intelephense", "--stdio"),
    "lua": ("lua-language-server",),
    "csharp": ("csharp-ls",),
}


def _command_name(command: str) -> str:
    name = os.path.basename(command.replace("\\", "/")).lower()
    for suffix in (".exe", ".cmd", ".bat", ".com"):
        if name.endswith(suffix):
            return name[: -len(suffix)]
    return name


def _interpreter(name: str) -> Optional[str]:
    if name in INLINE_CODE_FLAGS:
        return name
    match = _INTERPRETER_ALIASES.match(name)
    if not match:
        return None
    alias = next(group for group in match.groups() if group)
    return {"pypy": "python", "nodejs": "node", "luajit": "lua"}.get(alias, alias)


def runs_inline_code(name: str, args: Tuple[str, ...]) -> bool:
    """True when an interpreter is asked to run code passed on its command line."""
    interpreter = _interpreter(name)
    if interpreter is None:
        return False
    for arg in args:
        for flag in INLINE_CODE_FLAGS[interpreter]:
            if not flag.startswith("-"):
                if arg == flag:
                    return True
            elif flag.startswith("--"):
                if arg == flag or arg.startswith(flag + "="):
                    return True
            elif arg.startswith(flag) or (_SHORT_CLUSTER.match(arg) and flag[1] in arg[1:]):
                return True
    return False


@dataclass(frozen=True)
class ServerConfig:
    """Launch configuration for one language server family."""

    language: str
    command: str
    args: Tuple[str, ...] = ()
    initialization_options: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        command = (self.command or "").strip()
        if not command:
            raise ServerConfigError(f"Language server command for {self.language} is empty.")
        if "\x00" in command or any("\x00" in arg for arg in self.args):
            raise ServerConfigError(f"Language server command for {self.language} contains a null byte.")
        if _SHELL_METACHARS.search(command):
            raise ServerConfigError(f"Language server command for {self.language} contains shell metacharacters.")
        if _command_name(command) in SHELL_COMMANDS:
            raise ServerConfigError(
                f"Language server command '{_command_name(command)}' for {self.language} is a shell interpreter and is not allowed."
            )
        if runs_inline_code(_command_name(command), self.args):
            raise ServerConfigError(
                f"Language server command for {self.language} runs inline interpreter code and is not allowed."
            )

    @property
    def argv(self) -> List[str]:
        return [self.command, *self.args]


def language_for_path(path: Path) -> Optional[str]:
    return LANGUAGE_BY_EXTENSION.get(path.suffix.lower())


def server_family(language: str) -> str:
    return SERVER_FAMILY.get(language, language)


def _from_entry(language: str, entry: Any) -> ServerConfig:
    if isinstance(entry, str):
        parts = shlex.split(entry)
        if not parts:
            raise ServerConfigError(f"Language server command for {language} is empty.")
        return ServerConfig(language=language, command=parts[0], args=tuple(parts[1:]))
    if isinstance(entry, (list, tuple)):
        if not entry:
            raise ServerConfigError(f"Language server command for {language} is empty.")
        return ServerConfig(language=language, command=str(entry[0]), args=tuple(str(a) for a in entry[1:]))
    if isinstance(entry, dict):
        args = entry.get("args") or []
        if not isinstance(args, list):
            raise ServerConfigError(f"Language server args for {language} must be a list.")
        options = entry.get("initializationOptions") or {}
        return ServerConfig(
            language=language,
            command=str(entry.get("command") or ""),
            args=tuple(str(a) for a in args),
            initialization_options=dict(options),
        )
    raise ServerConfigError(f"Unsupported language server configuration for {language}.")


class ServerRegistry:
    """
    Resolves the server command for a language.

    Precedence: CODENAV_LSP_<LANGUAGE> env var, then the `lsp.servers` config
    section, then the built-in table. Every configured entry is validated at
    construction so a bad command fails before any process starts.
    """

    def __init__(self, overrides: Optional[Mapping[str, Any]] = None, environ: Optional[Mapping[str, str]] = None):
        env = os.environ if environ is None else environ
        self._servers: Dict[str, ServerConfig] = {
            language: ServerConfig(language=language, command=argv[0], args=tuple(argv[1:]))
            for language, argv in DEFAULT_SERVERS.items()
        }
        for language, entry in (overrides or {}).items():
            self._servers[server_family(language)] = _from_entry(server_family(language), entry)
        for language in list(self._servers):
            env_value = env.get(f"CODENAV_LSP_{language.upper()}")
            if env_value:
                self._servers[language] = _from_entry(language, env_value)

    @classmethod
    def from_config(cls) -> "ServerRegistry":
        servers = get_section("lsp").get("servers") or {}
        if not isinstance(servers, dict):
            raise ServerConfigError("lsp.servers must be an object.")
        return cls(servers)

    def languages(self) -> List[str]:
        return sorted(self._servers)

    def for_language(self, language: str) -> ServerConfig:
        config = self._servers.get(server_family(language))
        if config is None:
            raise LspUnavailableError(f"No language server configured for {language}.")
        return config

    def for_path(self, path: Path) -> Tuple[str, ServerConfig]:
        language = language_for_path(path)
        if language is None:
            raise LspUnavailableError(f"No language server for '{path.suffix or path.name}' files.")
        return language, self.for_language(language)
