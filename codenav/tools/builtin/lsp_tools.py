"""
LSP-backed navigation tools.

The three tools share one LspSessionManager, injected at construction so a
host (or a test) decides which servers back them.
"""

from typing import Optional

from ...lsp.operations import LspNavigator
from ...lsp.sessions import LspSessionManager
from ...models import CallHierarchyQuery, FindReferencesQuery, GotoDefinitionQuery
from ...security.path_guard import PathGuard
from ..base import Tool, ToolOutcome


class _LspTool(Tool):
    family = "lsp"

    def __init__(self, session_manager: Optional[LspSessionManager] = None):
        super().__init__()
        self.session_manager = session_manager or LspSessionManager.from_config()

    def navigator(self) -> LspNavigator:
        return LspNavigator(self.session_manager, PathGuard.from_context())


class GotoDefinitionTool(_LspTool):
    query_model = GotoDefinitionQuery

    def __init__(self, session_manager: Optional[LspSessionManager] = None):
        super().__init__(session_manager)
        self.name = "lsp_goto_definition"
        self.description = (
            "Jump to where a symbol is defined. Give the file, the symbol name and "
            "roughly which line it is on; re-exports are followed to the source."
        )

    async def run(self, query: GotoDefinitionQuery) -> ToolOutcome:
        return await self.navigator().goto_definition(query)


class FindReferencesTool(_LspTool):
    query_model = FindReferencesQuery

    def __init__(self, session_manager: Optional[LspSessionManager] = None):
        super().__init__(session_manager)
        self.name = "lsp_find_references"
        self.description = (
            "List every usage of a symbol across the workspace, marking declarations "
            "with isDefinition. Supports include/exclude globs and pagination."
        )

    async def run(self, query: FindReferencesQuery) -> ToolOutcome:
        return await self.navigator().find_references(query)


class CallHierarchyTool(_LspTool):
    query_model = CallHierarchyQuery

    def __init__(self, session_manager: Optional[LspSessionManager] = None):
        super().__init__(session_manager)
        self.name = "lsp_call_hierarchy"
        self.description = (
            "Trace who calls a function (incoming) or what it calls (outgoing), "
            "up to depth 3, with pagination for large trees."
        )

    async def run(self, query: CallHierarchyQuery) -> ToolOutcome:
        return await self.navigator().call_hierarchy(query)
