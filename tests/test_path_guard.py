"""Tests for workspace path confinement."""
import os
from pathlib import Path
from unittest.mock import patch
from urllib.parse import quote

import pytest

from codenav.errors import FileNotFoundInWorkspace, PathValidationError
from codenav.security.path_guard import PathGuard, freeze_allowed_roots, get_allowed_roots, uri_to_path
from codenav.tools.context import tool_context


def test_relative_path_resolves_under_root(workspace):
    (workspace / "pkg").mkdir()
    (workspace / "pkg" / "mod.py").write_text("x = 1\n")
    guard = PathGuard([str(workspace)])

    resolved = guard.confine("pkg/mod.py")

    assert resolved == workspace / "pkg" / "mod.py"
    assert guard.display(str(resolved)) == os.path.join("pkg", "mod.py")


def test_root_itself_is_allowed(workspace):
    guard = PathGuard([str(workspace)])
    assert guard.confine(".") == workspace
    assert guard.display(str(workspace)) == "."


def test_dotdot_escape_is_rejected_with_two_hints(workspace):
    guard = PathGuard([str(workspace)])

    with pytest.raises(PathValidationError) as excinfo:
        guard.confine("../../etc/passwd")

    error = excinfo.value
    assert error.code == "pathValidationFailed"
    assert len(error.hints) == 2
    assert error.hints[0] == f"Current working directory: {workspace}"
    assert error.hints[1] == f"Try: {workspace / 'passwd'}"


def test_out_of_root_path_makes_no_filesystem_call(workspace):
    guard = PathGuard([str(workspace)])

    with patch("os.path.realpath") as realpath, patch("os.path.exists") as exists, patch("os.stat") as stat:
        with pytest.raises(PathValidationError):
            guard.confine("/definitely/not/in/the/workspace.txt")

    realpath.assert_not_called()
    exists.assert_not_called()
    stat.assert_not_called()


def test_symlink_escape_is_rejected(workspace, tmp_path_factory):
    outside = tmp_path_factory.mktemp("outside").resolve()
    (outside / "secret.txt").write_text("nope")
    link = workspace / "link"
    try:
        os.symlink(outside, link)
    except (OSError, NotImplementedError):
        pytest.skip("symlinks not supported here")
    guard = PathGuard([str(workspace)])

    with pytest.raises(PathValidationError) as excinfo:
        guard.confine("link/secret.txt")

    assert excinfo.value.code == "pathValidationFailed"


def test_missing_path_reports_file_not_found(workspace):
    guard = PathGuard([str(workspace)])

    with pytest.raises(FileNotFoundInWorkspace) as excinfo:
        guard.confine("missing.py")

    assert excinfo.value.code == "file_not_found"
    assert guard.confine("missing.py", must_exist=False) == workspace / "missing.py"


def test_kind_is_enforced(workspace):
    (workspace / "dir").mkdir()
    (workspace / "file.txt").write_text("x")
    guard = PathGuard([str(workspace)])

    with pytest.raises(PathValidationError):
        guard.confine("dir", kind="file")
    with pytest.raises(PathValidationError):
        guard.confine("file.txt", kind="directory")


def test_null_byte_and_empty_path_rejected(workspace):
    guard = PathGuard([str(workspace)])
    with pytest.raises(PathValidationError):
        guard.confine("a\x00b")
    with pytest.raises(PathValidationError):
        guard.confine("   ")


def test_file_uri_prefix_is_accepted(workspace):
    (workspace / "a.py").write_text("")
    guard = PathGuard([str(workspace)])
    assert guard.confine(f"file://{workspace / 'a.py'}") == workspace / "a.py"


def test_extra_roots_and_deepest_root(workspace, tmp_path_factory):
    extra = tmp_path_factory.mktemp("extra").resolve()
    (extra / "lib.py").write_text("")
    nested = workspace / "nested"
    nested.mkdir()
    guard = PathGuard([str(workspace), str(extra), str(nested)])

    assert guard.confine(str(extra / "lib.py")) == extra / "lib.py"
    assert guard.root_for(str(nested / "x.py")) == str(nested)
    assert guard.root_for(str(workspace / "y.py")) == str(workspace)
    with pytest.raises(PathValidationError):
        guard.root_for("/elsewhere/z.py")


def test_roots_are_canonical_and_deduplicated(workspace):
    guard = PathGuard([str(workspace), str(workspace) + os.sep, str(workspace / "sub" / "..")])
    assert guard.roots == (str(workspace),)


def test_from_context_uses_work_path_and_extra_roots(workspace, tmp_path_factory):
    extra = tmp_path_factory.mktemp("granted").resolve()
    with tool_context({"work_path": str(workspace), "extra_work_paths": [str(extra)]}):
        guard = PathGuard.from_context()

    assert guard.primary_root == str(workspace)
    assert str(extra) in guard.roots


def test_prefix_sibling_is_not_inside_root(workspace):
    sibling = str(workspace) + "-other"
    guard = PathGuard([str(workspace)])
    assert not guard.is_within(sibling)


# ==================== Process-wide roots ====================

def test_allowed_roots_cannot_be_widened_after_startup(allowed_roots):
    assert freeze_allowed_roots(["/"]) == allowed_roots
    assert get_allowed_roots() == allowed_roots


def test_from_context_without_work_path_uses_allowed_roots(allowed_roots):
    with tool_context({}):
        guard = PathGuard.from_context()
    assert guard.roots == allowed_roots


def test_work_path_outside_allowed_roots_is_rejected(allowed_roots):
    outside = str(Path(allowed_roots[0]).parent)
    with tool_context({"work_path": outside}):
        with pytest.raises(PathValidationError):
            PathGuard.from_context()
    with tool_context({"work_path": "/"}):
        with pytest.raises(PathValidationError):
            PathGuard.from_context()


def test_extra_work_path_outside_allowed_roots_is_rejected(workspace, allowed_roots):
    context = {"work_path": str(workspace), "extra_work_paths": [str(Path(allowed_roots[0]).parent)]}
    with tool_context(context):
        with pytest.raises(PathValidationError):
            PathGuard.from_context()


def test_work_path_symlink_leaving_allowed_roots_is_rejected(workspace, allowed_roots):
    link = workspace / "up"
    try:
        os.symlink(Path(allowed_roots[0]).parent, link)
    except (OSError, NotImplementedError):
        pytest.skip("symlinks not supported here")
    with tool_context({"work_path": str(link)}):
        with pytest.raises(PathValidationError):
            PathGuard.from_context()


def test_work_path_must_be_a_directory(workspace):
    (workspace / "file.txt").write_text("x")
    with tool_context({"work_path": str(workspace / "file.txt")}):
        with pytest.raises(PathValidationError):
            PathGuard.from_context()


# ==================== Sensitive paths ====================

@pytest.mark.parametrize(
    "relative",
    [
        ".env",
        "config/.env.production",
        ".git/config",
        "vendor/lib/.git/HEAD",
        ".ssh/config",
        "keys/id_ed25519",
        "certs/server.pem",
        "deploy/terraform.tfstate",
        "home/.aws/credentials",
        ".npmrc",
        "gcp-service-account-prod.json",
        ".bash_history",
    ],
)
def test_sensitive_paths_are_rejected(workspace, relative):
    target = workspace / relative
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text("secret")
    guard = PathGuard([str(workspace)])

    with pytest.raises(PathValidationError) as excinfo:
        guard.confine(relative)

    assert "sensitive" in excinfo.value.message
    assert guard.is_ignored(str(target))
    assert not guard.is_exposable(str(target))


@pytest.mark.parametrize("relative", [".envrc", "environment.py", "src/keys.py", "docs/git.md", "credentials_form.tsx"])
def test_ordinary_paths_are_not_sensitive(workspace, relative):
    target = workspace / relative
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text("x")
    guard = PathGuard([str(workspace)])

    assert guard.confine(relative) == target
    assert guard.is_exposable(str(target))


def test_symlink_to_sensitive_file_is_rejected(workspace):
    (workspace / ".env").write_text("TOKEN=x")
    link = workspace / "notes.txt"
    try:
        os.symlink(workspace / ".env", link)
    except (OSError, NotImplementedError):
        pytest.skip("symlinks not supported here")
    guard = PathGuard([str(workspace)])

    with pytest.raises(PathValidationError):
        guard.confine("notes.txt")


# ==================== URIs ====================

def test_file_uri_is_percent_decoded(workspace):
    target = workspace / "my file#1.py"
    target.write_text("")
    guard = PathGuard([str(workspace)])

    assert guard.confine("file://" + quote(str(target))) == target


def test_encoded_traversal_in_file_uri_is_rejected(workspace):
    guard = PathGuard([str(workspace)])
    with pytest.raises(PathValidationError):
        guard.confine(f"file://{quote(str(workspace))}/%2e%2e/%2e%2e/etc/passwd")


def test_remote_file_uri_is_rejected(workspace):
    guard = PathGuard([str(workspace)])
    with pytest.raises(PathValidationError):
        guard.confine(f"file://fileserver{workspace}/a.py")


def test_uri_to_path_handles_schemes():
    assert uri_to_path("file:///tmp/a%20b.py") == Path("/tmp/a b.py")
    assert uri_to_path("file://localhost/tmp/x.py") == Path("/tmp/x.py")
    assert uri_to_path("file:///tmp/100%2525.py") == Path("/tmp/100%25.py")
    assert uri_to_path("/plain/path.py") == Path("/plain/path.py")
    assert uri_to_path("untitled:Untitled-1") is None
    assert uri_to_path("jdt://contents/rt.jar/java.lang/String.class") is None
    assert uri_to_path("https://example.com/a.py") is None
