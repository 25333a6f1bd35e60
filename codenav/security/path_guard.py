import logging
import os
import re
import threading
from pathlib import Path
from typing import Iterable, List, Optional, Tuple
from urllib.parse import urlparse
from urllib.request import url2pathname

from ..errors import FileNotFoundInWorkspace, PathValidationError
from ..tools.config import get_section, get_tool_config
from ..tools.context import get_tool_context
from .sensitive import is_sensitive_relpath

logger = logging.getLogger(__name__)

# two or more letters so Windows drive letters are not mistaken for a scheme
_URI_SCHEME = re.compile(r"^[A-Za-z][A-Za-z0-9+.-]+:")

_ALLOWED_ROOTS: Optional[Tuple[str, ...]] = None
_roots_lock = threading.Lock()


def uri_to_path(uri: str) -> Optional[Path]:
    """
    Filesystem path for a `file://` URI or a plain path.

    Percent escapes in file URIs are decoded once. URIs with any other
    scheme (untitled:, jdt://, http://) have no local path and give None.
    """
    if uri.startswith("file:"):
        parsed = urlparse(uri)
        if parsed.netloc not in ("", "localhost"):
            return None
        return Path(url2pathname(parsed.path))
    if _URI_SCHEME.match(uri):
        return None
    return Path(uri)


def _normalize(path: str) -> str:
    return os.path.normcase(os.path.normpath(path))


def _is_within_root(path: str, root: str) -> bool:
    path_key = _normalize(path)
    root_key = _normalize(root)
    if path_key == root_key:
        return True
    return path_key.startswith(root_key.rstrip(os.sep) + os.sep)


def _canonical_roots(roots: Iterable[str]) -> Tuple[str, ...]:
    unique: List[str] = []
    seen = set()
    for raw in roots:
        if not raw:
            continue
        resolved = os.path.realpath(os.path.expanduser(str(raw)))
        key = _normalize(resolved)
        if key in seen:
            continue
        seen.add(key)
        unique.append(resolved)
    return tuple(unique)


def configured_roots() -> List[str]:
    """Project root followed by `security.allowed_roots` from the loaded config."""
    roots = [get_tool_config().get("project_root") or os.getcwd()]
    extra = get_section("security").get("allowed_roots") or []
    if isinstance(extra, (list, tuple)):
        roots.extend(str(item) for item in extra if item)
    return roots


def freeze_allowed_roots(roots: Optional[Iterable[str]] = None) -> Tuple[str, ...]:
    """
    Fix the process-wide allowed roots.

    The first call canonicalizes `roots` (or the configured roots) and stores
    them; every later call returns that stored set unchanged, so nothing a
    request or a config reload does can widen it.
    """
    global _ALLOWED_ROOTS
    with _roots_lock:
        if _ALLOWED_ROOTS is None:
            frozen = _canonical_roots(roots if roots is not None else configured_roots())
            if not frozen:
                raise ValueError("At least one allowed root is required.")
            _ALLOWED_ROOTS = frozen
            logger.info("Allowed roots: %s", ", ".join(frozen))
        elif roots is not None and _canonical_roots(roots) != _ALLOWED_ROOTS:
            logger.warning("Allowed roots are already fixed; ignoring %s", list(roots))
        return _ALLOWED_ROOTS


def get_allowed_roots() -> Tuple[str, ...]:
    return freeze_allowed_roots()


class PathGuard:
    """
    Confines filesystem paths to a fixed set of allowed roots.

    Roots are canonicalized once at construction and never change. A path is
    checked lexically before any filesystem call, then again after symlinks
    are resolved, so `..` escapes and symlink escapes fail the same way.
    Credential-looking paths inside a root are refused by both checks.
    """

    def __init__(self, roots: Iterable[str]):
        unique = _canonical_roots(roots)
        if not unique:
            raise ValueError("PathGuard requires at least one allowed root.")
        self._roots: Tuple[str, ...] = unique

    @classmethod
    def from_context(cls) -> "PathGuard":
        """
        Guard for the current request.

        The request's work_path and extra_work_paths can only narrow the
        process-wide roots: each must resolve to a directory inside them.
        """
        allowed = cls(get_allowed_roots())
        tool_ctx = get_tool_context()
        requested = [tool_ctx.get("work_path")]
        extras = tool_ctx.get("extra_work_paths")
        if isinstance(extras, (list, tuple)):
            requested.extend(extras)
        requested = [str(item) for item in requested if item]
        if not requested:
            return allowed
        return cls(str(allowed.confine(item, kind="directory")) for item in requested)

    @property
    def roots(self) -> Tuple[str, ...]:
        return self._roots

    @property
    def primary_root(self) -> str:
        return self._roots[0]

    def is_within(self, path: str) -> bool:
        return any(_is_within_root(path, root) for root in self._roots)

    def root_for(self, path: str) -> str:
        """Deepest allowed root containing `path`."""
        matches = [root for root in self._roots if _is_within_root(str(path), root)]
        if not matches:
            raise PathValidationError(f"Path '{path}' is outside the allowed roots.", hints=self.failure_hints(str(path)))
        return max(matches, key=len)

    def is_ignored(self, path: str) -> bool:
        """True for credential-looking paths, judged relative to their root."""
        path = str(path)
        matches = [root for root in self._roots if _is_within_root(path, root)]
        if not matches:
            return False
        rel = os.path.relpath(os.path.normpath(path), max(matches, key=len))
        return is_sensitive_relpath(rel.split(os.sep))

    def is_exposable(self, path: str) -> bool:
        """Inside a root and not sensitive; used to filter tool output."""
        return self.is_within(path) and not self.is_ignored(path)

    def display(self, path: str) -> str:
        """Path relative to the primary root when inside it, else absolute."""
        path = str(path)
        if _is_within_root(path, self.primary_root):
            rel = os.path.relpath(path, self.primary_root)
            return "." if rel == os.curdir else rel
        return path

    def suggest(self, raw_path: str) -> str:
        name = os.path.basename(os.path.normpath(os.path.expanduser(raw_path))) or ""
        return os.path.join(self.primary_root, name) if name and name not in (os.curdir, os.pardir) else self.primary_root

    def failure_hints(self, raw_path: str) -> List[str]:
        return [
            f"Current working directory: {self.primary_root}",
            f"Try: {self.suggest(raw_path)}",
        ]

    def _absolute(self, raw_path: str) -> str:
        expanded = os.path.expanduser(raw_path)
        if not os.path.isabs(expanded):
            expanded = os.path.join(self.primary_root, expanded)
        return os.path.normpath(expanded)

    def _reject_sensitive(self, path: str, raw: str) -> None:
        if self.is_ignored(path):
            logger.warning("Rejected sensitive path: %s", raw)
            raise PathValidationError(
                f"Path '{raw}' matches a sensitive file pattern and cannot be accessed.",
                hints=[f"Current working directory: {self.primary_root}"],
            )

    def confine(self, raw_path: Optional[str], must_exist: bool = True, kind: Optional[str] = None) -> Path:
        """
        Resolve `raw_path` and require it to sit under an allowed root.

        Args:
            raw_path: Absolute, relative (to the primary root), `~` path or file:// URI
            must_exist: Require the path to exist
            kind: "file" or "directory" to enforce the entry type

        Returns:
            Canonical path

        Raises:
            PathValidationError: Outside the allowed roots, sensitive, or wrong entry type
            FileNotFoundInWorkspace: Path does not exist
        """
        if raw_path is None or not str(raw_path).strip():
            raise PathValidationError("Path is required.", hints=self.failure_hints("."))
        raw = str(raw_path).strip()
        if "\x00" in raw:
            raise PathValidationError("Path contains a null byte.", hints=self.failure_hints("."))
        if raw.startswith("file:"):
            decoded = uri_to_path(raw)
            if decoded is None:
                raise PathValidationError(f"'{raw}' is not a local file URI.", hints=self.failure_hints("."))
            raw = str(decoded)
            if "\x00" in raw:
                raise PathValidationError("Path contains a null byte.", hints=self.failure_hints("."))

        absolute = self._absolute(raw)
        if not self.is_within(absolute):
            logger.warning("Rejected path outside allowed roots: %s", raw)
            raise PathValidationError(
                f"Path '{raw}' is outside the allowed roots.",
                hints=self.failure_hints(raw),
            )
        self._reject_sensitive(absolute, raw)

        canonical = os.path.realpath(absolute)
        if not self.is_within(canonical):
            logger.warning("Rejected symlink escaping allowed roots: %s", raw)
            raise PathValidationError(
                f"Path '{raw}' is outside the allowed roots.",
                hints=self.failure_hints(raw),
            )
        self._reject_sensitive(canonical, raw)

        if must_exist or kind:
            if not os.path.exists(canonical):
                raise FileNotFoundInWorkspace(
                    f"Path '{raw}' does not exist.",
                    hints=self.failure_hints(raw),
                )
            if kind == "file" and not os.path.isfile(canonical):
                raise PathValidationError(f"Path '{raw}' is not a file.", hints=self.failure_hints(raw))
            if kind == "directory" and not os.path.isdir(canonical):
                raise PathValidationError(f"Path '{raw}' is not a directory.", hints=self.failure_hints(raw))
        return Path(canonical)
