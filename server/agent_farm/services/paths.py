"""Validation for untrusted paths and identifiers coming from HTTP or the CLI."""

from __future__ import annotations

import os
import re
from pathlib import Path
from urllib.parse import unquote

from ..errors import NotFoundError, PathOutsideProject, ValidationError

# Ids end up in tmux session names and process arguments
_SAFE_ID = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
_SAFE_NAME = re.compile(r"^[A-Za-z0-9 _.-]{1,64}$")


def validate_id(value: str, what: str = "id") -> str:
    if not isinstance(value, str) or not _SAFE_ID.match(value):
        raise ValidationError(f"Invalid {what}: only letters, digits, '-' and '_' are allowed")
    return value


def validate_name(value: str, what: str = "name") -> str:
    if not isinstance(value, str) or not _SAFE_NAME.match(value):
        raise ValidationError(f"Invalid {what}: only letters, digits, spaces, '.', '-' and '_' are allowed")
    return value


def _is_within(path: str, root: str) -> bool:
    return path == root or path.startswith(root.rstrip(os.sep) + os.sep)


def resolve_project_path(project_root: Path, raw_path: str) -> Path:
    """Resolve an absolute or project-relative path, refusing anything outside the root.

    Percent-encoding is decoded before the check so that ``%2e%2e%2f`` cannot
    smuggle a ``../`` through. If the target exists its symlinks are resolved
    and the real location is checked again.
    """
    if not raw_path:
        raise ValidationError("Missing path")
    decoded = unquote(raw_path)
    if "\x00" in decoded:
        raise ValidationError("Invalid path")

    root = os.path.normpath(os.path.abspath(project_root))
    candidate = decoded if os.path.isabs(decoded) else os.path.join(root, decoded)
    normalized = os.path.normpath(candidate)
    if not _is_within(normalized, root):
        raise PathOutsideProject("Path is outside the project")

    if os.path.exists(normalized):
        real = os.path.realpath(normalized)
        if not _is_within(real, os.path.realpath(root)):
            raise PathOutsideProject("Path resolves outside the project")
        return Path(real)
    return Path(normalized)


def resolve_project_file(project_root: Path, raw_path: str) -> Path:
    """Like :func:`resolve_project_path`, but the target must be an existing file."""
    path = resolve_project_path(project_root, raw_path)
    if not path.is_file():
        raise NotFoundError(f"File not found: {raw_path}")
    return path
