"""
Input validation and ephemeral workspace staging.
"""

from __future__ import annotations

import logging
import os
import shutil
import stat
import tempfile
from pathlib import Path
from typing import Iterable, Sequence

from safescript._types import Mount
from safescript.errors import InputValidationFailed

logger = logging.getLogger(__name__)

SCRIPT_TARGET = "/script.py"
OUTPUT_TARGET = "/output"
INPUT_ROOT = "/data"

DEFAULT_WORKSPACE_ROOT = Path("~/.cache/safescript/tmp")


def container_path(index: int, path: Path | str) -> str:
    """In-sandbox location of the ``index``-th input file."""
    return f"{INPUT_ROOT}/input_{index}/{os.path.basename(os.fspath(path))}"


def build_file_mapping(paths: Sequence[Path | str]) -> dict[str, str]:
    """Map each host input path to where the script will see it."""
    return {os.fspath(path): container_path(i, path) for i, path in enumerate(paths)}


def _within(path: Path, root: Path) -> bool:
    try:
        path.relative_to(root)
    except ValueError:
        return False
    return True


def validate_input_paths(
    paths: Iterable[Path | str], allowed_root: Path | None = None
) -> list[Path]:
    """
    Check every input path before anything is provisioned.

    A path is rejected if it contains a ``..`` segment, if it does not exist, or if it is not a regular file. Symlinks are only
    followed when ``allowed_root`` is given and the link lands inside it.

    Returns:
        The validated paths as absolute host paths.

    Raises:
        InputValidationFailed: On the first invalid path.
    """
    root = allowed_root.expanduser().resolve() if allowed_root is not None else None
    validated: list[Path] = []
    for raw in paths:
        text = os.fspath(raw)
        if not text:
            raise InputValidationFailed(text, "empty path")
        if ".." in Path(text).parts or ".." in Path(os.path.normpath(text)).parts:
            raise InputValidationFailed(text, "path traversal is not allowed")

        path = Path(os.path.abspath(text))
        try:
            info = path.lstat()
        except FileNotFoundError:
            raise InputValidationFailed(text, "file does not exist") from None
        except OSError as e:
            raise InputValidationFailed(text, f"cannot stat: {e.strerror}") from None

        if stat.S_ISLNK(info.st_mode):
            if root is None:
                raise InputValidationFailed(text, "symbolic links are not allowed")
            target = path.resolve()
            if not _within(target, root):
                raise InputValidationFailed(text, "symbolic link points outside the allowed directory")
            try:
                info = target.stat()
            except OSError:
                raise InputValidationFailed(text, "symbolic link target does not exist") from None
            path = target

        if not stat.S_ISREG(info.st_mode):
            raise InputValidationFailed(text, "not a regular file")
        if root is not None and not _within(path.resolve(), root):
            raise InputValidationFailed(text, "outside the allowed directory")
        validated.append(path)
    return validated


class Workspace:
    """
    Transient files for one execution: the script, an output directory and
    the input mounts.

    The workspace lives under a directory the container runtime can bind
    mount. Some runtimes (Colima, Lima, Docker Desktop) only share the home
    directory, so the default root is under ``~/.cache``.
    """

    def __init__(self, path: Path, script_path: Path, output_dir: Path) -> None:
        self.path = path
        self.script_path = script_path
        self.output_dir = output_dir
        self.mounts: list[Mount] = []

    @classmethod
    def create(
        cls,
        script: str,
        inputs: Sequence[Path],
        *,
        root: Path | None = None,
        output_dir: Path | None = None,
    ) -> Workspace:
        """Stage a script and its inputs. Blocking; run it off the event loop."""
        path = Path(tempfile.mkdtemp(prefix="exec-", dir=_workspace_root(root)))
        try:
            script_path = path / "script.py"
            script_path.write_text(script, encoding="utf-8")
            os.chmod(script_path, 0o644)
            os.chmod(path, 0o755)

            if output_dir is None:
                output_dir = path / "output"
                output_dir.mkdir()
            os.chmod(output_dir, 0o777)
        except OSError:
            shutil.rmtree(path, ignore_errors=True)
            raise

        workspace = cls(path, script_path, output_dir)
        workspace.mounts = [
            Mount(source=script_path, target=SCRIPT_TARGET),
            Mount(source=output_dir, target=OUTPUT_TARGET, read_only=False),
        ]
        workspace.mounts.extend(
            Mount(source=source, target=container_path(i, source))
            for i, source in enumerate(inputs)
        )
        return workspace

    def remove(self) -> None:
        """Delete the workspace. Caller-supplied output directories are kept."""
        shutil.rmtree(self.path)


def _workspace_root(root: Path | None) -> str:
    candidate = (root or DEFAULT_WORKSPACE_ROOT).expanduser()
    try:
        candidate.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        if root is not None:
            raise
        logger.debug(f"Cannot use {candidate} for workspaces ({e}); using system temp")
        return tempfile.gettempdir()
    return str(candidate)
