"""Tests for language server configuration and JSON-RPC framing."""
import asyncio
import json
from pathlib import Path

import pytest

from codenav.errors import CommandTimeoutError, LspProtocolError, LspUnavailableError, ServerConfigError
from codenav.lsp.protocol import LspClient
from codenav.lsp.servers import ServerConfig, ServerRegistry, server_family


# ==================== Server configuration ====================

@pytest.mark.parametrize("command", ["bash", "/bin/sh", "zsh", "cmd.exe", "powershell", "PWSH.EXE", "env", "sudo"])
def test_shell_interpreters_rejected(command):
    with pytest.raises(ServerConfigError):
        ServerConfig(language="python", command=command, args=("-c", "pylsp"))


@pytest.mark.parametrize("command", ["pylsp; rm -rf /", "gopls|tee", "$(evil)", "a`b`"])
def test_shell_metacharacters_rejected(command):
    with pytest.raises(ServerConfigError):
        ServerConfig(language="go", command=command)


@pytest.mark.parametrize(
    "command,args",
    [
        ("python3", ("-c", "import os; os.system('id')")),
        ("/usr/bin/python3.12", ("-Ic", "pass")),
        ("python", ("-cimport os",)),
        ("node", ("-e", "require('child_process').execSync('id')")),
        ("nodejs", ("--eval=1",)),
        ("node", ("--require", "./evil.js", "server.js")),
        ("perl", ("-E", "say 1")),
        ("ruby", ("-e", "1")),
        ("php", ("-r", "echo 1;")),
        ("deno", ("eval", "1")),
    ],
)
def test_interpreter_inline_code_rejected(command, args):
    with pytest.raises(ServerConfigError):
        ServerConfig(language="python", command=command, args=args)


def test_interpreter_running_a_server_module_is_allowed():
    assert ServerConfig(language="python", command="python3", args=("-m", "pylsp")).argv == ["python3", "-m", "pylsp"]
    assert ServerConfig(language="typescript", command="node", args=("server.js", "--stdio")).command == "node"


def test_config_entry_with_inline_code_fails_registry_construction():
    with pytest.raises(ServerConfigError):
        ServerRegistry(overrides={"python": "python3 -c 'import pylsp'"}, environ={})


def test_env_override_is_validated():
    with pytest.raises(ServerConfigError):
        ServerRegistry(environ={"CODENAV_LSP_PYTHON": "bash -c pylsp"})


def test_env_override_beats_config_beats_default():
    registry = ServerRegistry(
        overrides={"python": {"command": "/opt/pyright-langserver", "args": ["--stdio"]}, "go": ["gopls", "-rpc.trace"]},
        environ={"CODENAV_LSP_GO": "/usr/local/bin/gopls serve"},
    )

    assert registry.for_language("python").argv == ["/opt/pyright-langserver", "--stdio"]
    assert registry.for_language("go").argv == ["/usr/local/bin/gopls", "serve"]
    assert registry.for_language("rust").argv == ["rust-analyzer"]


def test_language_families_share_a_server():
    registry = ServerRegistry(environ={})

    language, config = registry.for_path(Path("component.tsx"))

    assert language == "typescriptreact"
    assert server_family(language) == "typescript"
    assert config is registry.for_language("javascript")


def test_unknown_extension_is_unavailable():
    with pytest.raises(LspUnavailableError):
        ServerRegistry(environ={}).for_path(Path("notes.txt"))


# ==================== JSON-RPC framing ====================

class RecordingWriter:
    def __init__(self):
        self.buffer = b""

    def write(self, data: bytes) -> None:
        self.buffer += data

    async def drain(self) -> None:
        return None

    def messages(self):
        found = []
        data = self.buffer
        while data:
            header, _, rest = data.partition(b"\r\n\r\n")
            length = int(header.split(b":")[1])
            found.append(json.loads(rest[:length]))
            data = rest[length:]
        return found


def frame(message) -> bytes:
    body = json.dumps(message).encode("utf-8")
    return b"Content-Length: " + str(len(body)).encode() + b"\r\n\r\n" + body


async def settle():
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_request_framing_and_response_matching():
    reader = asyncio.StreamReader()
    writer = RecordingWriter()
    client = LspClient(reader, writer, request_timeout=5)

    first = asyncio.create_task(client.request("textDocument/definition", {"x": 1}))
    second = asyncio.create_task(client.request("textDocument/references", {"x": 2}))
    await settle()
    sent = writer.messages()
    assert [m["method"] for m in sent] == ["textDocument/definition", "textDocument/references"]
    assert writer.buffer.startswith(b"Content-Length: ")

    # answer out of order
    reader.feed_data(frame({"jsonrpc": "2.0", "id": sent[1]["id"], "result": ["refs"]}))
    reader.feed_data(frame({"jsonrpc": "2.0", "id": sent[0]["id"], "result": {"uri": "file:///a"}}))

    assert await first == {"uri": "file:///a"}
    assert await second == ["refs"]
    await client.close()


@pytest.mark.asyncio
async def test_server_requests_are_answered():
    reader = asyncio.StreamReader()
    writer = RecordingWriter()
    client = LspClient(reader, writer)
    client.start()

    reader.feed_data(frame({"jsonrpc": "2.0", "id": 99, "method": "workspace/configuration", "params": {"items": [{}, {}]}}))
    reader.feed_data(frame({"jsonrpc": "2.0", "id": 100, "method": "window/workDoneProgress/create", "params": {}}))
    await settle()

    replies = {m["id"]: m for m in writer.messages()}
    assert replies[99]["result"] == [{}, {}]
    assert replies[100]["result"] is None
    await client.close()


@pytest.mark.asyncio
async def test_error_response_raises_protocol_error():
    reader = asyncio.StreamReader()
    writer = RecordingWriter()
    client = LspClient(reader, writer)

    pending = asyncio.create_task(client.request("callHierarchy/incomingCalls", {}))
    await settle()
    request_id = writer.messages()[0]["id"]
    reader.feed_data(frame({"jsonrpc": "2.0", "id": request_id, "error": {"code": -32601, "message": "Unhandled method"}}))

    with pytest.raises(LspProtocolError) as excinfo:
        await pending
    assert excinfo.value.rpc_code == -32601
    assert excinfo.value.code == "lspRequestFailed"
    await client.close()


@pytest.mark.asyncio
async def test_request_timeout_is_structured():
    client = LspClient(asyncio.StreamReader(), RecordingWriter(), request_timeout=0.05)

    with pytest.raises(CommandTimeoutError) as excinfo:
        await client.request("textDocument/definition", {})

    assert "textDocument/definition" in excinfo.value.message
    await client.close()


@pytest.mark.asyncio
async def test_server_exit_fails_pending_requests():
    reader = asyncio.StreamReader()
    client = LspClient(reader, RecordingWriter(), request_timeout=5)

    pending = asyncio.create_task(client.request("initialize", {}))
    await settle()
    reader.feed_eof()

    with pytest.raises(LspProtocolError):
        await pending
    assert client.closed
    with pytest.raises(LspProtocolError):
        await client.request("shutdown")
