"""
Process sandbox

Every external process goes through this module:
- build_env: child environment from an explicit allowlist, sensitive names stripped last
- validate_args: argv sanity checks (no NUL bytes, bounded length)
- spawn: direct argv execution with a wall-clock timeout and an output byte cap
- spawn_server: long-lived stdio child for language servers
"""

import asyncio
import fnmatch
import logging
import os
import signal
import time
from dataclasses import dataclass
from functools import lru_cache
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Tuple

from ..errors import (
    BinaryNotFoundError,
    CommandError,
    CommandFailedError,
    CommandTimeoutError,
    ValidationError,
)
from ..tools.config import get_section

logger = logging.getLogger(__name__)


MAX_ARG_LENGTH = 1000
DEFAULT_TIMEOUT_SEC = 30.0
DEFAULT_MAX_OUTPUT_BYTES = 10 * 1024 * 1024
MAX_STDERR_BYTES = 64 * 1024
_READ_CHUNK = 64 * 1024
_KILL_GRACE_SEC = 2.0

CORE_ENV_NAMES: FrozenSet[str] = frozenset({
    "PATH",
    "TMPDIR",
    "TMP",
    "TEMP",
    "SYSTEMROOT",
    "WINDIR",
    "COMSPEC",
    "PATHEXT",
    "LANG",
    "LC_ALL",
})

TOOLING_ENV_NAMES: FrozenSet[str] = frozenset({
    "HOME",
    "USERPROFILE",
    "APPDATA",
    "LOCALAPPDATA",
    "XDG_CACHE_HOME",
})

PROXY_ENV_NAMES: FrozenSet[str] = frozenset({
    "HTTP_PROXY",
    "HTTPS_PROXY",
    "NO_PROXY",
})

SENSITIVE_ENV_NAMES: FrozenSet[str] = frozenset({
    "NODE_OPTIONS",
    "GITHUB_TOKEN",
    "GH_TOKEN",
    "GITLAB_TOKEN",
    "GL_TOKEN",
    "GITHUB_PERSONAL_ACCESS_TOKEN",
    "NPM_TOKEN",
    "AWS_ACCESS_KEY_ID",
    "AWS_SECRET_ACCESS_KEY",
    "AWS_SESSION_TOKEN",
    "DATABASE_URL",
    "LD_PRELOAD",
    "LD_LIBRARY_PATH",
    "LD_AUDIT",
    "DYLD_INSERT_LIBRARIES",
    "DYLD_LIBRARY_PATH",
    "BASH_ENV",
})

SENSITIVE_ENV_PATTERNS: Tuple[str, ...] = (
    "*TOKEN*",
    "*SECRET*",
    "*PASSWORD*",
    "*PASSWD*",
    "*API_KEY*",
    "*APIKEY*",
    "*CREDENTIAL*",
    "*PRIVATE_KEY*",
)


@dataclass(frozen=True)
class SandboxPolicy:
    """Read-only env policy, built once per process."""

    extra_allowed: FrozenSet[str]
    denied_names: FrozenSet[str]
    denied_patterns: Tuple[str, ...]

    def is_sensitive(self, name: str) -> bool:
        upper = name.upper()
        if upper in self.denied_names:
            return True
        return any(fnmatch.fnmatchcase(upper, pattern) for pattern in self.denied_patterns)


@lru_cache(maxsize=1)
def get_sandbox_policy() -> SandboxPolicy:
    sandbox_cfg = get_section("sandbox")
    extra_allowed = frozenset(str(name).upper() for name in sandbox_cfg.get("env_allowlist") or [] if name)
    extra_denied = tuple(str(pattern).upper() for pattern in sandbox_cfg.get("env_denylist") or [] if pattern)
    return SandboxPolicy(
        extra_allowed=extra_allowed,
        denied_names=SENSITIVE_ENV_NAMES,
        denied_patterns=SENSITIVE_ENV_PATTERNS + extra_denied,
    )


def is_sensitive_env_name(name: str) -> bool:
    return get_sandbox_policy().is_sensitive(name)


def build_env(
    overrides: Optional[Mapping[str, str]] = None,
    tooling: bool = False,
    allow_proxy: bool = False,
    source: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    """
    Build a child environment from the allowlist only.

    Args:
        overrides: Caller-supplied values; keys outside the allowlist are ignored
        tooling: Also forward home/profile directories (language servers need them)
        allow_proxy: Also forward proxy settings
        source: Host environment (defaults to os.environ)

    Returns:
        New dict; sensitive names are never present, even when requested
    """
    policy = get_sandbox_policy()
    host = os.environ if source is None else source
    allowed = set(CORE_ENV_NAMES) | policy.extra_allowed
    if tooling:
        allowed |= TOOLING_ENV_NAMES
    if allow_proxy:
        allowed |= PROXY_ENV_NAMES

    env: Dict[str, str] = {}
    for name, value in host.items():
        if name.upper() in allowed and value is not None:
            env[name] = str(value)
    for name, value in (overrides or {}).items():
        if name.upper() in allowed and value is not None:
            env[name] = str(value)

    for name in list(env):
        if policy.is_sensitive(name):
            del env[name]
    return env


def validate_args(args: Iterable[str]) -> List[str]:
    checked: List[str] = []
    for arg in args:
        if not isinstance(arg, str):
            raise ValidationError(f"Invalid argument type: {type(arg).__name__}.")
        if "\x00" in arg:
            raise ValidationError("Argument contains a null byte.")
        if len(arg) > MAX_ARG_LENGTH:
            raise ValidationError(f"Argument exceeds {MAX_ARG_LENGTH} characters.")
        checked.append(arg)
    return checked


class _BoundedBuffer:
    def __init__(self, limit: int):
        self.limit = max(0, int(limit))
        self.chunks: List[bytes] = []
        self.size = 0
        self.truncated = False

    def append(self, chunk: bytes) -> bool:
        """Store what fits; return False once the cap has been hit."""
        if self.truncated:
            return False
        room = self.limit - self.size
        if len(chunk) > room:
            if room > 0:
                self.chunks.append(chunk[:room])
                self.size += room
            self.truncated = True
            return False
        self.chunks.append(chunk)
        self.size += len(chunk)
        return True

    def getvalue(self) -> bytes:
        return b"".join(self.chunks)


@dataclass
class SpawnResult:
    command: str
    returncode: Optional[int]
    stdout: bytes
    stderr: bytes
    truncated: bool = False
    duration: float = 0.0

    @property
    def text(self) -> str:
        return self.stdout.decode("utf-8", errors="replace")

    @property
    def stderr_text(self) -> str:
        return self.stderr.decode("utf-8", errors="replace")

    def check(self, ok_codes: Sequence[int] = (0,)) -> "SpawnResult":
        if self.truncated or self.returncode in ok_codes:
            return self
        first_line = next((line.strip() for line in self.stderr_text.splitlines() if line.strip()), "")
        message = f"{self.command} exited with code {self.returncode}."
        if first_line:
            message = f"{message} {first_line[:200]}"
        raise CommandFailedError(message, returncode=self.returncode)


def _default_timeout() -> float:
    try:
        return float(get_section("sandbox").get("timeout_sec", DEFAULT_TIMEOUT_SEC))
    except (TypeError, ValueError):
        return DEFAULT_TIMEOUT_SEC


def _default_max_output() -> int:
    try:
        return int(get_section("sandbox").get("max_output_bytes", DEFAULT_MAX_OUTPUT_BYTES))
    except (TypeError, ValueError):
        return DEFAULT_MAX_OUTPUT_BYTES


def _signal_process_tree(proc: asyncio.subprocess.Process, sig: int) -> None:
    if proc.returncode is not None:
        return
    if os.name == "nt":
        proc.kill()
        return
    try:
        os.killpg(os.getpgid(proc.pid), sig)
    except ProcessLookupError:
        return
    except PermissionError:
        proc.send_signal(sig)


async def terminate_process_tree(proc: asyncio.subprocess.Process) -> None:
    """SIGTERM the process group, SIGKILL it if it is still alive after a grace period."""
    _signal_process_tree(proc, signal.SIGTERM)
    try:
        await asyncio.wait_for(proc.wait(), timeout=_KILL_GRACE_SEC)
    except asyncio.TimeoutError:
        _signal_process_tree(proc, getattr(signal, "SIGKILL", signal.SIGTERM))
        await proc.wait()


async def _create_process(argv: List[str], env: Dict[str, str], cwd: Optional[str], **kwargs):
    command = os.path.basename(argv[0])
    policy = get_sandbox_policy()
    dropped = sorted(name for name in env if policy.is_sensitive(name))
    if dropped:
        logger.warning("Dropping sensitive variables from %s environment: %s", command, ", ".join(dropped))
    env = {name: value for name, value in env.items() if not policy.is_sensitive(name)}
    try:
        return await asyncio.create_subprocess_exec(
            *argv,
            cwd=cwd,
            env=env,
            start_new_session=os.name != "nt",
            **kwargs,
        )
    except FileNotFoundError:
        raise BinaryNotFoundError(
            f"{command} is not available on this system.",
            hints=[f"Install {command} or add it to PATH."],
        )
    except PermissionError:
        raise CommandError(f"{command} could not be executed (permission denied).")


async def spawn(
    argv: Sequence[str],
    env: Optional[Dict[str, str]] = None,
    cwd: Optional[str] = None,
    timeout: Optional[float] = None,
    max_output_bytes: Optional[int] = None,
) -> SpawnResult:
    """
    Run `argv` directly (never through a shell) and collect bounded output.

    Output beyond `max_output_bytes` is dropped, the result is marked truncated
    and the child is stopped. A timeout kills the whole process group.

    Raises:
        ValidationError: Empty argv or invalid arguments
        BinaryNotFoundError: Executable missing
        CommandTimeoutError: Wall-clock timeout exceeded
    """
    args = validate_args(argv)
    if not args:
        raise ValidationError("Command is empty.")
    command = os.path.basename(args[0])
    timeout = _default_timeout() if timeout is None else float(timeout)
    limit = _default_max_output() if max_output_bytes is None else int(max_output_bytes)
    child_env = build_env() if env is None else env

    logger.debug("spawn %s (timeout=%ss, cap=%s bytes)", args, timeout, limit)
    started = time.monotonic()
    proc = await _create_process(
        args,
        child_env,
        cwd,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )

    stdout_buf = _BoundedBuffer(limit)
    stderr_buf = _BoundedBuffer(MAX_STDERR_BYTES)

    async def _pump(stream: asyncio.StreamReader, buf: _BoundedBuffer, stop_on_full: bool) -> None:
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                return
            if not buf.append(chunk) and stop_on_full and proc.returncode is None:
                # keep draining so the child never blocks on a full pipe
                _signal_process_tree(proc, signal.SIGTERM)

    async def _run() -> None:
        await asyncio.gather(
            _pump(proc.stdout, stdout_buf, True),
            _pump(proc.stderr, stderr_buf, False),
        )
        await proc.wait()

    try:
        await asyncio.wait_for(_run(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("%s timed out after %ss; killing process group", command, timeout)
        await terminate_process_tree(proc)
        raise CommandTimeoutError(command, timeout)
    except asyncio.CancelledError:
        await terminate_process_tree(proc)
        raise

    if stdout_buf.truncated:
        logger.warning("%s output truncated at %s bytes", command, limit)
    return SpawnResult(
        command=command,
        returncode=proc.returncode,
        stdout=stdout_buf.getvalue(),
        stderr=stderr_buf.getvalue(),
        truncated=stdout_buf.truncated,
        duration=time.monotonic() - started,
    )


async def spawn_server(
    argv: Sequence[str],
    env: Optional[Dict[str, str]] = None,
    cwd: Optional[str] = None,
) -> asyncio.subprocess.Process:
    """Start a long-lived stdio child (language server) in its own process group."""
    args = validate_args(argv)
    if not args:
        raise ValidationError("Command is empty.")
    child_env = build_env(tooling=True) if env is None else env
    logger.info("Starting server process %s in %s", args[0], cwd)
    return await _create_process(
        args,
        child_env,
        cwd,
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
