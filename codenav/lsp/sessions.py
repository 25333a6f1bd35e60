"""
Language server sessions.

One server process per (workspace root, server family). Sessions are
started lazily, shared between queries, serialized by a per-session lock,
reference counted while in use and shut down after sitting idle.
"""

import asyncio
import hashlib
import logging
import os
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple

from ..errors import BinaryNotFoundError, CommandTimeoutError, LspProtocolError, LspUnavailableError
from ..security.sandbox import build_env, spawn_server, terminate_process_tree
from ..tools.config import get_section
from .protocol import DEFAULT_REQUEST_TIMEOUT, LspClient
from .servers import ServerConfig, ServerRegistry, server_family

logger = logging.getLogger(__name__)

DEFAULT_IDLE_TIMEOUT = 300.0
SHUTDOWN_TIMEOUT = 5.0


def path_to_uri(path: Path) -> str:
    return Path(path).resolve().as_uri()


class LspSession:
    """LSP requests for one server process. Positions are 0-indexed here."""

    def __init__(self, root: Path, family: str, config: ServerConfig, client: LspClient, process=None):
        self.root = Path(root)
        self.family = family
        self.config = config
        self.client = client
        self.process = process
        self.lock = asyncio.Lock()
        self.refcount = 0
        self.last_used = time.monotonic()
        self.capabilities: Dict[str, Any] = {}
        self._documents: Dict[str, Tuple[int, str]] = {}
        self.stderr_task: Optional[asyncio.Task] = None

    @property
    def alive(self) -> bool:
        if self.client.closed:
            return False
        return self.process is None or self.process.returncode is None

    async def initialize(self) -> Dict[str, Any]:
        root_uri = path_to_uri(self.root)
        params = {
            "processId": os.getpid(),
            "rootUri": root_uri,
            "rootPath": str(self.root),
            "capabilities": {
                "textDocument": {
                    "synchronization": {"didSave": False, "dynamicRegistration": False},
                    "definition": {"linkSupport": True},
                    "references": {},
                    "callHierarchy": {"dynamicRegistration": False},
                },
                "workspace": {"configuration": True},
            },
            "initializationOptions": dict(self.config.initialization_options),
            "workspaceFolders": [{"uri": root_uri, "name": self.root.name or str(self.root)}],
        }
        result = await self.client.request("initialize", params) or {}
        self.capabilities = result.get("capabilities", {}) if isinstance(result, dict) else {}
        await self.client.notify("initialized", {})
        logger.info("LSP initialized for %s at %s", self.family, self.root)
        return result

    async def open_document(self, path: Path, text: str, language_id: str) -> None:
        uri = path_to_uri(path)
        digest = hashlib.sha1(text.encode("utf-8", errors="replace")).hexdigest()
        current = self._documents.get(uri)
        if current is None:
            await self.client.notify("textDocument/didOpen", {
                "textDocument": {"uri": uri, "languageId": language_id, "version": 1, "text": text},
            })
            self._documents[uri] = (1, digest)
            return
        version, known_digest = current
        if known_digest == digest:
            return
        version += 1
        await self.client.notify("textDocument/didChange", {
            "textDocument": {"uri": uri, "version": version},
            "contentChanges": [{"text": text}],
        })
        self._documents[uri] = (version, digest)

    def _position_params(self, path: Path, line: int, character: int) -> Dict[str, Any]:
        return {
            "textDocument": {"uri": path_to_uri(path)},
            "position": {"line": line, "character": character},
        }

    async def definition(self, path: Path, line: int, character: int) -> Any:
        return await self.client.request("textDocument/definition", self._position_params(path, line, character))

    async def references(self, path: Path, line: int, character: int, include_declaration: bool = True) -> Any:
        params = self._position_params(path, line, character)
        params["context"] = {"includeDeclaration": include_declaration}
        return await self.client.request("textDocument/references", params)

    async def prepare_call_hierarchy(self, path: Path, line: int, character: int) -> Any:
        return await self.client.request("textDocument/prepareCallHierarchy", self._position_params(path, line, character))

    async def incoming_calls(self, item: Dict[str, Any]) -> Any:
        return await self.client.request("callHierarchy/incomingCalls", {"item": item})

    async def outgoing_calls(self, item: Dict[str, Any]) -> Any:
        return await self.client.request("callHierarchy/outgoingCalls", {"item": item})

    async def shutdown(self) -> None:
        try:
            if not self.client.closed:
                await self.client.request("shutdown", timeout=SHUTDOWN_TIMEOUT)
                await self.client.notify("exit")
        except (CommandTimeoutError, LspProtocolError) as exc:
            logger.warning("LSP %s at %s did not shut down cleanly: %s", self.family, self.root, exc.message)
        finally:
            await self.client.close()
            if self.process is not None and self.process.returncode is None:
                try:
                    await asyncio.wait_for(self.process.wait(), timeout=SHUTDOWN_TIMEOUT)
                except asyncio.TimeoutError:
                    await terminate_process_tree(self.process)
            if self.stderr_task is not None:
                self.stderr_task.cancel()
        logger.info("LSP %s at %s stopped", self.family, self.root)


async def _drain_stderr(stream: Optional[asyncio.StreamReader], name: str) -> None:
    if stream is None:
        return
    while True:
        line = await stream.readline()
        if not line:
            return
        logger.debug("[%s] %s", name, line.decode("utf-8", errors="replace").rstrip())


async def start_session(root: Path, family: str, config: ServerConfig, request_timeout: float = DEFAULT_REQUEST_TIMEOUT) -> LspSession:
    """Spawn the server through the sandbox and complete the initialize handshake."""
    try:
        process = await spawn_server(config.argv, env=build_env(tooling=True), cwd=str(root))
    except BinaryNotFoundError:
        raise LspUnavailableError(
            f"Language server '{config.command}' for {family} is not installed.",
            hints=[f"Install {config.command} or set CODENAV_LSP_{family.upper()}."],
        )
    client = LspClient(process.stdout, process.stdin, request_timeout=request_timeout)
    client.start()
    stderr_task = asyncio.create_task(_drain_stderr(process.stderr, config.command))
    session = LspSession(root, family, config, client, process)
    session.stderr_task = stderr_task
    try:
        await session.initialize()
    except (CommandTimeoutError, LspProtocolError) as exc:
        await client.close()
        await terminate_process_tree(process)
        stderr_task.cancel()
        raise LspUnavailableError(f"Language server '{config.command}' failed to initialize: {exc.message}")
    return session


SessionFactory = Callable[[Path, str, ServerConfig], Awaitable[LspSession]]


class LspSessionManager:
    """
    Registry of live sessions keyed by (root, server family).

    Injected into the LSP tools; tests pass a manager built with a fake
    factory instead of spawning real servers.
    """

    def __init__(
        self,
        registry: Optional[ServerRegistry] = None,
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        factory: Optional[SessionFactory] = None,
    ):
        self.registry = registry or ServerRegistry()
        self.idle_timeout = idle_timeout
        self.request_timeout = request_timeout
        self._factory = factory
        self._sessions: Dict[Tuple[str, str], LspSession] = {}
        self._starting: Dict[Tuple[str, str], "asyncio.Future[LspSession]"] = {}
        self._lock = asyncio.Lock()
        self._reaper: Optional[asyncio.Task] = None

    @classmethod
    def from_config(cls) -> "LspSessionManager":
        cfg = get_section("lsp")
        return cls(
            registry=ServerRegistry.from_config(),
            idle_timeout=float(cfg.get("idle_timeout_sec", DEFAULT_IDLE_TIMEOUT)),
            request_timeout=float(cfg.get("request_timeout_sec", DEFAULT_REQUEST_TIMEOUT)),
        )

    def sessions(self) -> List[LspSession]:
        return list(self._sessions.values())

    async def _create(self, root: Path, family: str, config: ServerConfig) -> LspSession:
        if self._factory is not None:
            return await self._factory(root, family, config)
        return await start_session(root, family, config, self.request_timeout)

    async def _get_or_start(self, root: Path, language: str, config: ServerConfig) -> LspSession:
        """
        Live session for (root, family), starting one if needed.

        The manager lock only guards the tables. A start runs outside it and is
        published as a per-key future, so concurrent callers for the same key
        wait for that one start and other keys are never blocked by it.
        """
        family = server_family(language)
        key = (str(root), family)
        while True:
            async with self._lock:
                session = self._sessions.get(key)
                if session is not None and not session.alive:
                    logger.warning("LSP %s at %s exited; restarting", family, root)
                    self._sessions.pop(key, None)
                    session = None
                if session is not None:
                    session.refcount += 1
                    return session
                pending = self._starting.get(key)
                starter = pending is None
                if starter:
                    pending = asyncio.get_running_loop().create_future()
                    self._starting[key] = pending
            if starter:
                return await self._start(key, root, family, config, pending)
            await asyncio.shield(pending)

    async def _start(
        self,
        key: Tuple[str, str],
        root: Path,
        family: str,
        config: ServerConfig,
        pending: "asyncio.Future[LspSession]",
    ) -> LspSession:
        try:
            session = await self._create(root, family, config)
        except Exception as exc:
            async with self._lock:
                self._starting.pop(key, None)
            pending.set_exception(exc)
            # waiters re-raise it; mark retrieved for when there are none
            pending.exception()
            raise
        except asyncio.CancelledError:
            async with self._lock:
                self._starting.pop(key, None)
            pending.set_exception(LspUnavailableError(f"Start of the {family} language server was cancelled."))
            pending.exception()
            raise
        async with self._lock:
            self._starting.pop(key, None)
            self._sessions[key] = session
            session.refcount += 1
        pending.set_result(session)
        return session

    @asynccontextmanager
    async def acquire(self, root: Path, path: Path) -> AsyncIterator[LspSession]:
        """Hold the session for `path` exclusively for the duration of the block."""
        language, config = self.registry.for_path(Path(path))
        session = await self._get_or_start(Path(root), language, config)
        try:
            async with session.lock:
                yield session
        finally:
            session.refcount -= 1
            session.last_used = time.monotonic()

    async def evict_idle(self, now: Optional[float] = None) -> int:
        now = time.monotonic() if now is None else now
        async with self._lock:
            stale = [
                key for key, session in self._sessions.items()
                if session.refcount <= 0 and now - session.last_used >= self.idle_timeout
            ]
            evicted = [self._sessions.pop(key) for key in stale]
        for session in evicted:
            logger.info("Evicting idle LSP %s at %s", session.family, session.root)
            await session.shutdown()
        return len(evicted)

    def start_reaper(self, interval: Optional[float] = None) -> None:
        if self._reaper is not None:
            return
        period = interval or max(1.0, self.idle_timeout / 4)

        async def _loop():
            while True:
                await asyncio.sleep(period)
                await self.evict_idle()

        self._reaper = asyncio.create_task(_loop())

    async def close_all(self) -> None:
        if self._reaper is not None:
            self._reaper.cancel()
            try:
                await self._reaper
            except asyncio.CancelledError:
                pass
            self._reaper = None
        async with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            await session.shutdown()
