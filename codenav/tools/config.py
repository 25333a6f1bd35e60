import json
import os
from pathlib import Path
from typing import Any, Dict, List


_DEFAULT_CONFIG: Dict[str, Any] = {
    "enabled": {
        "local_search": True,
        "local_find_files": True,
        "lsp_goto_definition": True,
        "lsp_find_references": True,
        "lsp_call_hierarchy": True,
        "local_fetch_content": True,
        "local_view_structure": True
    },
    "server": {
        "cors_origins": []
    },
    "security": {
        "allowed_roots": []
    },
    "sandbox": {
        "timeout_sec": 30,
        "max_output_bytes": 10 * 1024 * 1024,
        "env_allowlist": [],
        "env_denylist": []
    },
    "bulk": {
        "concurrency": 3,
        "local_max_queries": 5,
        "lsp_max_queries": 3,
        "query_timeout_sec": 60
    },
    "search": {
        "files_per_page": 10,
        "matches_per_page": 10,
        "max_match_chars": 400
    },
    "find": {
        "files_per_page": 20,
        "limit": 1000
    },
    "fetch": {
        "max_file_kb": 100,
        "max_output_chars": 10000,
        "max_matches": 50,
        "context_lines": 5
    },
    "structure": {
        "entries_per_page": 20,
        "recursive_depth": 5,
        "max_entries": 10000
    },
    "lsp": {
        "search_radius": 5,
        "context_lines": 5,
        "max_context_lines": 20,
        "calls_per_page": 15,
        "max_calls_per_page": 30,
        "references_per_page": 20,
        "max_references_per_page": 50,
        "request_timeout_sec": 30,
        "idle_timeout_sec": 300,
        "servers": {}
    }
}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _split_env_list(name: str) -> List[str]:
    raw = os.getenv(name) or ""
    return [item.strip() for item in raw.split(",") if item.strip()]


def _normalize_config_path(path: Path) -> Path:
    if path.exists() and path.is_file():
        return path
    if path.suffix:
        return path
    return path / "codenav_config.json"


def _get_project_root() -> Path:
    return Path(os.getenv("CODENAV_PROJECT_ROOT") or os.getcwd())


def _get_config_file_path() -> Path:
    env_path = os.getenv("CODENAV_CONFIG_PATH")
    if env_path:
        return _normalize_config_path(Path(env_path).expanduser())
    return _get_project_root() / "codenav_config.json"


def get_tool_config_path() -> str:
    return str(_get_config_file_path())


def _load_config_file() -> Dict[str, Any]:
    path = _get_config_file_path()
    if path.exists():
        data = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError(f"Config file {path} must contain a JSON object.")
        return data
    return {}


def _apply_env_overrides(config: Dict[str, Any]) -> None:
    sandbox = config.setdefault("sandbox", {})
    extra_allow = _split_env_list("CODENAV_ENV_ALLOWLIST")
    if extra_allow:
        sandbox["env_allowlist"] = list(sandbox.get("env_allowlist") or []) + extra_allow
    extra_deny = _split_env_list("CODENAV_ENV_DENYLIST")
    if extra_deny:
        sandbox["env_denylist"] = list(sandbox.get("env_denylist") or []) + extra_deny

    max_output = os.getenv("CODENAV_MAX_OUTPUT_BYTES")
    if max_output:
        try:
            sandbox["max_output_bytes"] = int(max_output)
        except ValueError:
            raise ValueError("CODENAV_MAX_OUTPUT_BYTES must be an integer.")
    cors_origins = _split_env_list("CODENAV_CORS_ORIGINS")
    if cors_origins:
        config.setdefault("server", {})["cors_origins"] = cors_origins

    timeout = os.getenv("CODENAV_TIMEOUT_SEC")
    if timeout:
        try:
            sandbox["timeout_sec"] = float(timeout)
        except ValueError:
            raise ValueError("CODENAV_TIMEOUT_SEC must be a number.")


def _load_config() -> Dict[str, Any]:
    config = _deep_merge(_DEFAULT_CONFIG, _load_config_file())
    root_override = os.getenv("CODENAV_PROJECT_ROOT") or config.get("project_root")
    root_path = Path(root_override).expanduser() if root_override else _get_project_root()
    config["project_root"] = str(root_path.resolve())
    _apply_env_overrides(config)
    return config


_TOOL_CONFIG = _load_config()


def get_tool_config() -> Dict[str, Any]:
    return _TOOL_CONFIG


def get_section(name: str) -> Dict[str, Any]:
    section = get_tool_config().get(name)
    return section if isinstance(section, dict) else {}


def reload_tool_config() -> Dict[str, Any]:
    global _TOOL_CONFIG
    _TOOL_CONFIG = _load_config()
    return _TOOL_CONFIG


def update_tool_config(patch: Dict[str, Any]) -> Dict[str, Any]:
    if not isinstance(patch, dict):
        raise ValueError("Config update must be a JSON object.")
    current_file = _load_config_file()
    merged_file = _deep_merge(current_file, patch)
    path = _get_config_file_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(merged_file, ensure_ascii=False, indent=2), encoding="utf-8")
    return reload_tool_config()


def is_tool_enabled(name: str) -> bool:
    enabled = get_tool_config().get("enabled", {})
    return bool(enabled.get(name, False))
