"""Tests for workspace path resolution, the command blocklist and clamp_text."""

import os

import pytest

from agent_core import PathEscapeError, Safety, clamp_text


class TestResolvePath:
    def test_relative_path_joins_workspace(self, workspace):
        resolved = Safety.resolve_path(workspace, "src/main.py")
        assert resolved == workspace / "src" / "main.py"

    def test_workspace_root_itself_is_allowed(self, workspace):
        assert Safety.resolve_path(workspace, ".") == workspace

    def test_absolute_path_inside_workspace(self, workspace):
        inside = str(workspace / "a" / ".." / "b.txt")
        assert Safety.resolve_path(workspace, inside) == workspace / "b.txt"

    @pytest.mark.parametrize("candidate", [
        "../../etc/passwd",
        "..",
        "a/../../outside.txt",
        "/etc/passwd",
    ])
    def test_escapes_are_rejected(self, workspace, candidate):
        with pytest.raises(PathEscapeError, match="path escapes workspace"):
            Safety.resolve_path(workspace, candidate)

    def test_sibling_with_shared_prefix_is_rejected(self, workspace):
        sibling = str(workspace) + "-evil/file.txt"
        with pytest.raises(PathEscapeError):
            Safety.resolve_path(workspace, sibling)

    @pytest.mark.parametrize("candidate", ["", "   ", "\t"])
    def test_blank_path_is_rejected(self, workspace, candidate):
        with pytest.raises(PathEscapeError, match="path required"):
            Safety.resolve_path(workspace, candidate)

    @pytest.mark.parametrize("candidate", [
        "x", "./x/y", "x/../y", "deep/../../work/z", "../work/q", "/", "../../..",
    ])
    def test_result_never_leaves_workspace(self, workspace, candidate):
        try:
            resolved = str(Safety.resolve_path(workspace, candidate))
        except PathEscapeError:
            return
        root = str(workspace)
        assert resolved == root or resolved.startswith(root + os.sep)


class TestDangerousCommand:
    @pytest.mark.parametrize("cmd", [
        "sudo rm -rf /tmp",
        "SHUTDOWN now",
        "rm -rf / --no-preserve-root",
        "systemctl reboot",
        "echo halting",
    ])
    def test_blocked(self, cmd):
        assert Safety.is_dangerous_command(cmd)

    @pytest.mark.parametrize("cmd", [
        "sudo_user_list",
        "ls -la",
        "rm -rf ./build",
        "python -m pytest",
    ])
    def test_allowed(self, cmd):
        assert not Safety.is_dangerous_command(cmd)


class TestClampText:
    def test_short_text_unchanged(self):
        assert clamp_text("hello", 10) == "hello"
        assert clamp_text("hello", 5) == "hello"

    def test_long_text_gets_marker(self):
        out = clamp_text("abcdefghij", 4)
        assert out.startswith("abcd")
        assert out == "abcd\n\n...<truncated 6 chars>"

    def test_counts_characters_not_bytes(self):
        text = "é" * 10
        out  = clamp_text(text, 10)
        assert out == text
        assert clamp_text(text, 3).startswith("ééé\n\n")

    @pytest.mark.parametrize("text,limit", [
        ("x" * 50, 10),
        ("short", 10),
        ("line\n" * 40, 7),
        ("", 3),
    ])
    def test_idempotent(self, text, limit):
        once = clamp_text(text, limit)
        assert clamp_text(once, limit) == once

    def test_non_positive_limit(self):
        assert clamp_text("abc", 0) == ""
