"""JSON-RPC 2.0 client for language servers over stdio.

Messages are framed with HTTP-style headers:

    Content-Length: 52\\r\\n
    \\r\\n
    {"jsonrpc":"2.0","id":1,"method":"initialize","params":{}}

A single reader task owns the server's stdout. Each outgoing request gets its
own id and future, so responses are matched by id even if several requests
are in flight. Server-initiated requests are answered immediately; a server
that blocks on an unanswered request never replies to ours.
"""

import asyncio
import itertools
import json
import logging
from typing import Any, Dict, Optional

from ..errors import CommandTimeoutError, LspProtocolError

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT = 30.0
_MAX_CONTENT_LENGTH = 64 * 1024 * 1024


class LspClient:
    def __init__(self, reader: asyncio.StreamReader, writer, request_timeout: float = DEFAULT_REQUEST_TIMEOUT):
        self._reader = reader
        self._writer = writer
        self.request_timeout = request_timeout
        self._ids = itertools.count(1)
        self._pending: Dict[int, asyncio.Future] = {}
        self._reader_task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        if self._reader_task is None:
            self._reader_task = asyncio.create_task(self._read_loop())

    async def request(self, method: str, params: Optional[Dict[str, Any]] = None, timeout: Optional[float] = None) -> Any:
        if self._closed:
            raise LspProtocolError("Language server connection is closed.")
        self.start()
        request_id = next(self._ids)
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        message: Dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            message["params"] = params
        limit = self.request_timeout if timeout is None else timeout
        try:
            await self._send(message)
            logger.debug("-> request id=%d method=%s", request_id, method)
            return await asyncio.wait_for(future, timeout=limit)
        except asyncio.TimeoutError:
            raise CommandTimeoutError(method, limit)
        finally:
            self._pending.pop(request_id, None)

    async def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        message: Dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        await self._send(message)
        logger.debug("-> notification method=%s", method)

    async def close(self) -> None:
        self._closed = True
        if self._reader_task is not None:
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
            self._reader_task = None
        self._fail_pending(LspProtocolError("Language server connection is closed."))

    async def _send(self, message: Dict[str, Any]) -> None:
        body = json.dumps(message, ensure_ascii=False).encode("utf-8")
        header = f"Content-Length: {len(body)}\r\n\r\n".encode("ascii")
        try:
            self._writer.write(header + body)
            await self._writer.drain()
        except (ConnectionError, BrokenPipeError) as exc:
            self._closed = True
            raise LspProtocolError(f"Language server is not accepting input ({exc.__class__.__name__}).")

    async def _read_message(self) -> Optional[Dict[str, Any]]:
        content_length = None
        while True:
            line = await self._reader.readline()
            if not line:
                return None
            text = line.decode("ascii", errors="replace").strip()
            if not text:
                if content_length is None:
                    continue
                break
            name, _, value = text.partition(":")
            if name.strip().lower() == "content-length":
                try:
                    content_length = int(value.strip())
                except ValueError:
                    raise LspProtocolError(f"Invalid Content-Length header: {value.strip()!r}")
        if content_length < 0 or content_length > _MAX_CONTENT_LENGTH:
            raise LspProtocolError(f"Content-Length out of range: {content_length}")
        body = await self._reader.readexactly(content_length)
        return json.loads(body.decode("utf-8"))

    async def _read_loop(self) -> None:
        try:
            while True:
                message = await self._read_message()
                if message is None:
                    break
                await self._dispatch(message)
        except asyncio.CancelledError:
            raise
        except (asyncio.IncompleteReadError, LspProtocolError, ValueError) as exc:
            logger.warning("Language server stream error: %s", exc)
        finally:
            self._closed = True
            self._fail_pending(LspProtocolError("Language server exited."))

    async def _dispatch(self, message: Dict[str, Any]) -> None:
        has_id = "id" in message
        has_method = "method" in message
        if has_id and has_method:
            await self._handle_server_request(message)
        elif has_id:
            future = self._pending.get(message["id"])
            if future is None or future.done():
                logger.debug("Dropping response for unknown id=%s", message.get("id"))
                return
            if "error" in message:
                error = message["error"] or {}
                future.set_exception(LspProtocolError(
                    error.get("message", "Language server error."),
                    rpc_code=error.get("code"),
                    data=error.get("data"),
                ))
            else:
                future.set_result(message.get("result"))
            logger.debug("<- response id=%s", message["id"])
        else:
            logger.debug("<- notification method=%s", message.get("method", "?"))

    async def _handle_server_request(self, message: Dict[str, Any]) -> None:
        method = message.get("method", "")
        result: Any = None
        if method == "workspace/configuration":
            items = (message.get("params") or {}).get("items", [])
            result = [{} for _ in items]
        elif method == "workspace/workspaceFolders":
            result = []
        logger.debug("<- server request id=%s method=%s", message["id"], method)
        await self._send({"jsonrpc": "2.0", "id": message["id"], "result": result})

    def _fail_pending(self, error: Exception) -> None:
        for future in list(self._pending.values()):
            if not future.done():
                future.set_exception(error)
        self._pending.clear()
