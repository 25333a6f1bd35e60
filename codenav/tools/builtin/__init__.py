"""
Built-in Tools

- LocalSearchTool: Content search with ripgrep
- FindFilesTool: File discovery with find
- FetchContentTool: File reads with match filtering and char windows
- ViewStructureTool: Directory listing with filters and entry pagination
- GotoDefinitionTool / FindReferencesTool / CallHierarchyTool: LSP navigation
"""

from typing import Optional

from ...lsp.sessions import LspSessionManager
from ..base import ToolRegistry
from ..config import is_tool_enabled
from .fetch_content import FetchContentTool
from .find_files import FindFilesTool
from .local_search import LocalSearchTool
from .lsp_tools import CallHierarchyTool, FindReferencesTool, GotoDefinitionTool
from .view_structure import ViewStructureTool


def register_builtin_tools(session_manager: Optional[LspSessionManager] = None) -> Optional[LspSessionManager]:
    """
    Register all enabled built-in tools in the registry.

    The LSP tools share one session manager; it is returned so the host can
    close its sessions on shutdown.
    """
    if is_tool_enabled("local_search"):
        ToolRegistry.register(LocalSearchTool())
    if is_tool_enabled("local_find_files"):
        ToolRegistry.register(FindFilesTool())
    if is_tool_enabled("local_fetch_content"):
        ToolRegistry.register(FetchContentTool())
    if is_tool_enabled("local_view_structure"):
        ToolRegistry.register(ViewStructureTool())

    lsp_tools = [
        ("lsp_goto_definition", GotoDefinitionTool),
        ("lsp_find_references", FindReferencesTool),
        ("lsp_call_hierarchy", CallHierarchyTool),
    ]
    if not any(is_tool_enabled(name) for name, _ in lsp_tools):
        return session_manager
    if session_manager is None:
        session_manager = LspSessionManager.from_config()
    for name, tool_cls in lsp_tools:
        if is_tool_enabled(name):
            ToolRegistry.register(tool_cls(session_manager))
    return session_manager
