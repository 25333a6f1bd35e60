from .path_guard import PathGuard
from .sandbox import SpawnResult, build_env, spawn, spawn_server

__all__ = ["PathGuard", "SpawnResult", "build_env", "spawn", "spawn_server"]
