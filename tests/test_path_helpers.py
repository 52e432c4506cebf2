"""Tests for sftp_deploy/utils/path_helpers.py."""

from __future__ import annotations

import pytest

from sftp_deploy.utils.path_helpers import (
    ancestor_dirs,
    human_readable_size,
    normalize_base_path,
    resolve_remote_path,
    to_remote_platform,
    validate_remote_path,
)


class TestResolveRemotePath:
    def test_target_and_ancestors(self) -> None:
        resolved = resolve_remote_path("/var/www", "a/b/x.txt")
        assert resolved.target == "/var/www/a/b/x.txt"
        assert resolved.ancestors == ("/var/www", "/var/www/a", "/var/www/a/b")

    def test_ancestors_never_above_base(self) -> None:
        """No ancestor shorter than the base path is ever returned."""
        for rel in ("x.txt", "a/x.txt", "a/b/c/d/x.txt"):
            resolved = resolve_remote_path("/srv/site/current", rel)
            assert all(len(d) >= len("/srv/site/current") for d in resolved.ancestors)

    def test_cached_ancestors_are_filtered(self) -> None:
        cache = {"/var/www", "/var/www/a"}
        resolved = resolve_remote_path("/var/www", "a/b/x.txt", cache)
        assert resolved.ancestors == ("/var/www/a/b",)

    def test_trailing_slash_on_base_is_ignored(self) -> None:
        resolved = resolve_remote_path("/var/www/", "a/x.txt")
        assert resolved.ancestors == ("/var/www", "/var/www/a")

    def test_root_base(self) -> None:
        resolved = resolve_remote_path("/", "site/x.txt")
        assert resolved.target == "/site/x.txt"
        assert resolved.ancestors == ("/", "/site")

    def test_relative_base_stays_relative(self) -> None:
        resolved = resolve_remote_path("uploads", "a/x.txt")
        assert resolved.target == "uploads/a/x.txt"
        assert resolved.ancestors == ("uploads", "uploads/a")

    def test_tilde_base_is_relative_to_login_dir(self) -> None:
        resolved = resolve_remote_path("~/public_html", "x.txt")
        assert resolved.target == "public_html/x.txt"
        assert resolved.ancestors == ("public_html",)

    def test_backslashes_in_relative_path(self) -> None:
        resolved = resolve_remote_path("/var/www", "css\\site.css")
        assert resolved.target == "/var/www/css/site.css"

    def test_dot_segments_are_normalised(self) -> None:
        resolved = resolve_remote_path("/var/www", "./a/../b/x.txt")
        assert resolved.target == "/var/www/b/x.txt"
        assert resolved.ancestors == ("/var/www", "/var/www/b")

    def test_dirname(self) -> None:
        assert resolve_remote_path("/var/www", "a/x.txt").dirname == "/var/www/a"


class TestHelpers:
    def test_ancestor_dirs_absolute(self) -> None:
        assert ancestor_dirs("/var/www/a") == ["/", "/var", "/var/www", "/var/www/a"]

    def test_ancestor_dirs_relative(self) -> None:
        assert ancestor_dirs("site/a") == ["site", "site/a"]

    def test_ancestor_dirs_empty(self) -> None:
        assert ancestor_dirs("") == []
        assert ancestor_dirs(".") == []

    @pytest.mark.parametrize(
        ("base", "expected"),
        [("", "/"), ("/var/www/", "/var/www"), ("~", "."), ("~/", "."), ("C:\\site", "C:/site")],
    )
    def test_normalize_base_path(self, base: str, expected: str) -> None:
        assert normalize_base_path(base) == expected

    def test_windows_platform_uses_backslashes(self) -> None:
        assert to_remote_platform("/var/www/a", "windows") == "\\var\\www\\a"
        assert to_remote_platform("/var/www/a", "Win32") == "\\var\\www\\a"

    def test_unix_platform_unchanged(self) -> None:
        assert to_remote_platform("/var/www/a", "unix") == "/var/www/a"


class TestValidateRemotePath:
    def test_accepts_normal_path(self) -> None:
        assert validate_remote_path("/var/www/index.html") is True

    def test_rejects_null_byte(self) -> None:
        assert validate_remote_path("/var/www/\x00evil") is False

    def test_rejects_traversal(self) -> None:
        assert validate_remote_path("../etc/passwd") is False

    def test_rejects_empty(self) -> None:
        assert validate_remote_path("") is False


class TestHumanReadableSize:
    @pytest.mark.parametrize(
        ("size", "expected"),
        [(0, "0 B"), (512, "512 B"), (2048, "2.0 KB"), (5 * 1024 * 1024, "5.0 MB"), (-1, "0 B")],
    )
    def test_formats(self, size: int, expected: str) -> None:
        assert human_readable_size(size) == expected
