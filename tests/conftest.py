"""Shared pytest fixtures for all tests."""
import asyncio
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pytest

from codenav.lsp.servers import ServerRegistry
from codenav.lsp.sessions import LspSessionManager
from codenav.security.path_guard import freeze_allowed_roots


def lsp_range(line: int, character: int, length: int = 1) -> Dict[str, Any]:
    return {
        "start": {"line": line, "character": character},
        "end": {"line": line, "character": character + length},
    }


def lsp_location(path: Path, line: int, character: int, length: int = 1) -> Dict[str, Any]:
    return {"uri": path.resolve().as_uri(), "range": lsp_range(line, character, length)}


def call_item(name: str, path: Path, line: int, character: int, kind: int = 12) -> Dict[str, Any]:
    rng = lsp_range(line, character, len(name))
    return {"name": name, "kind": kind, "uri": path.resolve().as_uri(), "range": rng, "selectionRange": rng}


class FakeSession:
    """
    Stand-in for LspSession answering from canned tables.

    Position-keyed tables use (file name, 0-indexed line); call tables are
    keyed by the call hierarchy item's name.
    """

    def __init__(
        self,
        definitions: Optional[Dict[Tuple[str, int], Any]] = None,
        references: Optional[Dict[Tuple[str, int], Any]] = None,
        prepare: Optional[Dict[Tuple[str, int], Any]] = None,
        incoming: Optional[Dict[str, Any]] = None,
        outgoing: Optional[Dict[str, Any]] = None,
    ):
        self.definitions = definitions or {}
        self.references_table = references or {}
        self.prepare = prepare or {}
        self.incoming = incoming or {}
        self.outgoing = outgoing or {}
        self.lock = asyncio.Lock()
        self.refcount = 0
        self.last_used = 0.0
        self.alive = True
        self.opened: List[str] = []
        self.calls: List[Tuple[str, Any]] = []
        self.shutdown_count = 0

    async def open_document(self, path, text, language_id):
        self.opened.append(Path(path).name)

    async def definition(self, path, line, character):
        self.calls.append(("definition", (Path(path).name, line, character)))
        return self.definitions.get((Path(path).name, line))

    async def references(self, path, line, character, include_declaration=True):
        self.calls.append(("references", (Path(path).name, line, character)))
        return self.references_table.get((Path(path).name, line))

    async def prepare_call_hierarchy(self, path, line, character):
        self.calls.append(("prepare", (Path(path).name, line, character)))
        return self.prepare.get((Path(path).name, line))

    async def incoming_calls(self, item):
        self.calls.append(("incoming", item["name"]))
        return self.incoming.get(item["name"], [])

    async def outgoing_calls(self, item):
        self.calls.append(("outgoing", item["name"]))
        return self.outgoing.get(item["name"], [])

    async def shutdown(self):
        self.shutdown_count += 1
        self.alive = False


def make_manager(session_or_factory, idle_timeout: float = 300.0) -> LspSessionManager:
    """Session manager whose factory hands out fake sessions instead of spawning servers."""
    if callable(session_or_factory) and not isinstance(session_or_factory, FakeSession):
        build = session_or_factory
    else:
        def build(root, family, config):
            return session_or_factory

    async def factory(root, family, config):
        return build(root, family, config)

    return LspSessionManager(registry=ServerRegistry(environ={}), idle_timeout=idle_timeout, factory=factory)


@pytest.fixture(scope="session", autouse=True)
def allowed_roots(tmp_path_factory):
    """Fix the process-wide allowed roots to pytest's base temp directory."""
    return freeze_allowed_roots([str(tmp_path_factory.getbasetemp().resolve())])


@pytest.fixture
def workspace(tmp_path):
    """Canonical workspace root (tmp_path may sit behind a symlink)."""
    return tmp_path.resolve()


@pytest.fixture
def py_project(workspace):
    """Small Python project with a re-export and a two-level call chain."""
    (workspace / "src").mkdir()
    (workspace / "src" / "util.py").write_text(
        "def helper(x):\n"
        "    return x + 1\n"
        "\n"
        "\n"
        "def caller():\n"
        "    return helper(2)\n",
        encoding="utf-8",
    )
    (workspace / "src" / "__init__.py").write_text("from .util import helper\n", encoding="utf-8")
    (workspace / "app.py").write_text(
        "from src import helper\n"
        "\n"
        "\n"
        "def main():\n"
        "    return helper(1)\n",
        encoding="utf-8",
    )
    return workspace
