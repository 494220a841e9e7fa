"""Tests for input validation and workspace staging."""

from __future__ import annotations

import os
import stat
from pathlib import Path

import pytest

from safescript import InputValidationFailed, build_file_mapping
from safescript.sandbox.workspace import (
    OUTPUT_TARGET,
    SCRIPT_TARGET,
    Workspace,
    container_path,
    validate_input_paths,
)


class TestValidateInputPaths:
    """Tests for validate_input_paths()."""

    def test_accepts_regular_file(self, input_file: Path) -> None:
        """Should return absolute paths for valid files."""
        assert validate_input_paths([input_file]) == [input_file.absolute()]

    def test_rejects_parent_segments(self, input_file: Path) -> None:
        """Any '..' segment should be rejected."""
        sneaky = f"{input_file.parent}/sub/../../{input_file.parent.name}/{input_file.name}"
        with pytest.raises(InputValidationFailed, match="traversal"):
            validate_input_paths([sneaky])

    def test_rejects_relative_traversal(self) -> None:
        with pytest.raises(InputValidationFailed, match="traversal"):
            validate_input_paths(["../../etc/passwd"])

    def test_rejects_missing_file(self, temp_dir: Path) -> None:
        with pytest.raises(InputValidationFailed, match="does not exist"):
            validate_input_paths([temp_dir / "nope.csv"])

    def test_rejects_directory(self, temp_dir: Path) -> None:
        with pytest.raises(InputValidationFailed, match="regular file"):
            validate_input_paths([temp_dir])

    def test_rejects_symlink_without_root(self, temp_dir: Path, input_file: Path) -> None:
        link = temp_dir / "link.csv"
        link.symlink_to(input_file)
        with pytest.raises(InputValidationFailed, match="symbolic link"):
            validate_input_paths([link])

    def test_symlink_inside_root_is_followed(self, temp_dir: Path, input_file: Path) -> None:
        """With an allowed root, links that stay inside it resolve to their target."""
        link = temp_dir / "link.csv"
        link.symlink_to(input_file)
        assert validate_input_paths([link], allowed_root=temp_dir) == [input_file.resolve()]

    def test_symlink_outside_root_is_rejected(self, temp_dir: Path, input_file: Path) -> None:
        root = temp_dir / "allowed"
        root.mkdir()
        link = root / "escape.csv"
        link.symlink_to(input_file)
        with pytest.raises(InputValidationFailed, match="outside"):
            validate_input_paths([link], allowed_root=root)

    def test_file_outside_root_is_rejected(self, temp_dir: Path, input_file: Path) -> None:
        root = temp_dir / "allowed"
        root.mkdir()
        with pytest.raises(InputValidationFailed, match="outside"):
            validate_input_paths([input_file], allowed_root=root)

    def test_stops_at_first_invalid(self, temp_dir: Path, input_file: Path) -> None:
        with pytest.raises(InputValidationFailed) as exc_info:
            validate_input_paths([input_file, temp_dir / "missing.txt"])
        assert exc_info.value.path.endswith("missing.txt")


class TestFileMapping:
    """Tests for in-sandbox path computation."""

    def test_container_path(self) -> None:
        assert container_path(0, "/home/me/data.csv") == "/data/input_0/data.csv"
        assert container_path(3, Path("x/y/report.xlsx")) == "/data/input_3/report.xlsx"

    def test_same_basename_does_not_collide(self) -> None:
        mapping = build_file_mapping(["/a/data.csv", "/b/data.csv"])
        assert mapping == {
            "/a/data.csv": "/data/input_0/data.csv",
            "/b/data.csv": "/data/input_1/data.csv",
        }


class TestWorkspace:
    """Tests for Workspace staging and removal."""

    def test_create_stages_script_and_output(self, temp_dir: Path, input_file: Path) -> None:
        workspace = Workspace.create("print('hi')", [input_file], root=temp_dir / "work")

        assert workspace.script_path.read_text() == "print('hi')"
        assert workspace.output_dir.is_dir()
        assert stat.S_IMODE(os.stat(workspace.output_dir).st_mode) == 0o777

        targets = {mount.target: mount for mount in workspace.mounts}
        assert targets[SCRIPT_TARGET].read_only
        assert not targets[OUTPUT_TARGET].read_only
        assert targets["/data/input_0/data.csv"].source == input_file
        assert targets["/data/input_0/data.csv"].read_only

        workspace.remove()
        assert not workspace.path.exists()

    def test_external_output_dir_survives_removal(self, temp_dir: Path) -> None:
        output = temp_dir / "keep"
        output.mkdir()
        workspace = Workspace.create("pass", [], root=temp_dir / "work", output_dir=output)

        assert workspace.output_dir == output
        workspace.remove()
        assert output.is_dir()
