"""Tests for untrusted path and identifier validation."""

from __future__ import annotations

import os

import pytest

from agent_farm.errors import NotFoundError, PathOutsideProject, ValidationError
from agent_farm.services.paths import (
    resolve_project_file,
    resolve_project_path,
    validate_id,
    validate_name,
)


class TestResolveProjectPath:
    def test_relative_path_inside(self, project):
        assert resolve_project_file(project, "src/app.py") == (project / "src" / "app.py").resolve()

    def test_absolute_path_inside(self, project):
        target = project / "src" / "app.py"
        assert resolve_project_file(project, str(target)) == target.resolve()

    def test_nonexistent_path_inside_is_allowed(self, project):
        assert resolve_project_path(project, "src/new.py") == project / "src" / "new.py"

    @pytest.mark.parametrize(
        "raw",
        [
            "../../etc/passwd",
            "%2e%2e%2f%2e%2e%2fetc%2fpasswd",
            "src/../../outside.txt",
            "/etc/passwd",
        ],
    )
    def test_escapes_are_rejected(self, project, raw):
        with pytest.raises(PathOutsideProject):
            resolve_project_path(project, raw)

    def test_sibling_with_common_prefix_is_rejected(self, project):
        sibling = project.parent / f"{project.name}-other"
        sibling.mkdir()
        with pytest.raises(PathOutsideProject):
            resolve_project_path(project, str(sibling))

    def test_symlink_escape_is_rejected(self, project, tmp_path):
        secret = tmp_path / "secret.txt"
        secret.write_text("nope")
        os.symlink(secret, project / "link.txt")
        with pytest.raises(PathOutsideProject):
            resolve_project_file(project, "link.txt")

    def test_symlink_inside_is_followed(self, project):
        os.symlink(project / "src" / "app.py", project / "alias.py")
        assert resolve_project_file(project, "alias.py") == (project / "src" / "app.py").resolve()

    def test_empty_path(self, project):
        with pytest.raises(ValidationError, match="Missing path"):
            resolve_project_path(project, "")

    def test_nul_byte(self, project):
        with pytest.raises(ValidationError, match="Invalid path"):
            resolve_project_path(project, "src/app.py%00.txt")

    def test_missing_file(self, project):
        with pytest.raises(NotFoundError):
            resolve_project_file(project, "src/missing.py")

    def test_directory_is_not_a_file(self, project):
        with pytest.raises(NotFoundError):
            resolve_project_file(project, "src")


class TestIdentifiers:
    @pytest.mark.parametrize("value", ["0001", "B1C2D3", "my_feature-2"])
    def test_valid_ids(self, value):
        assert validate_id(value) == value

    @pytest.mark.parametrize("value", ["", "a b", "x;rm -rf /", "../x", "$(id)", "a" * 65])
    def test_invalid_ids(self, value):
        with pytest.raises(ValidationError):
            validate_id(value)

    def test_valid_name(self):
        assert validate_name("api tests.log") == "api tests.log"

    @pytest.mark.parametrize("value", ["", "`whoami`", "a/b", "n" * 65])
    def test_invalid_names(self, value):
        with pytest.raises(ValidationError):
            validate_name(value)
