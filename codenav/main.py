import argparse
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import Body, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from . import __version__
from .bulk import BulkExecutor, extract_queries
from .errors import BatchValidationError, ServerConfigError
from .lsp.sessions import LspSessionManager
from .security.path_guard import freeze_allowed_roots
from .security.sandbox import get_sandbox_policy
from .tools.base import ToolRegistry
from .tools.builtin import register_builtin_tools
from .tools.config import get_section, get_tool_config, get_tool_config_path, reload_tool_config, update_tool_config
from .tools.context import tool_context

logger = logging.getLogger(__name__)

_state: Dict[str, Optional[LspSessionManager]] = {"sessions": None}

# settings that widen what the server may touch or run; file or env only
READ_ONLY_CONFIG_KEYS = ("project_root", "security", "sandbox", "server", "lsp.servers")


def _register_tools() -> None:
    get_sandbox_policy.cache_clear()
    ToolRegistry.clear()
    _state["sessions"] = register_builtin_tools(_state["sessions"])


def _read_only_keys(payload: Dict[str, Any]) -> List[str]:
    found = []
    for dotted in READ_ONLY_CONFIG_KEYS:
        node: Any = payload
        for part in dotted.split("."):
            if not isinstance(node, dict) or part not in node:
                break
            node = node[part]
        else:
            found.append(dotted)
    return found


@asynccontextmanager
async def lifespan(app: FastAPI):
    freeze_allowed_roots()
    _register_tools()
    manager = _state["sessions"]
    if manager is not None:
        manager.start_reaper()
    logger.info("Tools registered: %s", ", ".join(ToolRegistry.list_names()))
    yield
    manager = _state["sessions"]
    if manager is not None:
        await manager.close_all()
    _state["sessions"] = None


app = FastAPI(title="Code Navigation Tools", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(get_section("server").get("cors_origins") or []),
    allow_credentials=False,
    allow_methods=["GET", "POST", "PUT"],
    allow_headers=["Content-Type"],
)


class ToolCallRequest(BaseModel):
    queries: List[Dict[str, Any]]
    work_path: Optional[str] = None
    extra_work_paths: List[str] = []


# ==================== Base routes ====================

@app.get("/")
def read_root():
    return {"status": "ok", "version": __version__}


# ==================== Tools ====================

@app.get("/tools")
def get_tools():
    return [tool.to_dict() for tool in ToolRegistry.get_all()]


@app.get("/tools/config")
def get_tools_config():
    return {"path": get_tool_config_path(), "config": get_tool_config()}


@app.put("/tools/config")
async def set_tools_config(payload: Dict[str, Any] = Body(...)):
    locked = _read_only_keys(payload)
    if locked:
        raise HTTPException(
            status_code=403,
            detail=f"{', '.join(locked)} can only be changed in the config file or environment.",
        )
    try:
        updated = update_tool_config(payload)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    try:
        _register_tools()
    except ServerConfigError as e:
        raise HTTPException(status_code=400, detail=e.message)
    if _state["sessions"] is not None:
        _state["sessions"].start_reaper()
    return updated


@app.post("/tools/{tool_name}")
async def run_tool(tool_name: str, request: ToolCallRequest):
    tool = ToolRegistry.get(tool_name)
    if tool is None:
        raise HTTPException(status_code=404, detail=f"Unknown tool: {tool_name}")
    context = {"work_path": request.work_path, "extra_work_paths": request.extra_work_paths}
    with tool_context(context):
        try:
            envelope = await BulkExecutor.from_config().run(tool, extract_queries({"queries": request.queries}))
        except BatchValidationError as e:
            raise HTTPException(status_code=400, detail={"errorCode": e.code, "error": e.message})
    return envelope.to_dict()


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Code navigation tool server")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--root", help="Workspace root (overrides CODENAV_PROJECT_ROOT)")
    parser.add_argument("--log-level", default="info", choices=["debug", "info", "warning", "error"])
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if args.root:
        os.environ["CODENAV_PROJECT_ROOT"] = os.path.abspath(args.root)
        reload_tool_config()
    logger.info("Config file: %s", get_tool_config_path())
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level)


if __name__ == "__main__":
    main()
