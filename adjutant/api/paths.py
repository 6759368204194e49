"""Workspace containment and sensitive-path checks.

Every filesystem-touching tool goes through ``resolve_path`` before it
sees a path. Failures raise SecurityError, which the executor turns into
an ordinary tool error.
"""

from __future__ import annotations

import logging
from pathlib import Path

from adjutant.errors import SecurityError

logger = logging.getLogger(__name__)

# File names that are never written, even inside the workspace
_SENSITIVE_NAMES = frozenset({
    ".env",
    "id_rsa",
    "id_dsa",
    "id_ecdsa",
    "id_ed25519",
    ".npmrc",
    ".pypirc",
    ".netrc",
})
_SENSITIVE_PREFIXES = (".env.",)
_SENSITIVE_SUFFIXES = (".pem", ".key", ".p12", ".pfx")
_SENSITIVE_DIRS = frozenset({".git", ".ssh", ".aws", ".gnupg"})

# Absolute locations that are never a valid target
_SYSTEM_DIRS = tuple(Path(p) for p in ("/etc", "/usr", "/bin", "/sbin", "/boot", "/sys", "/proc", "/dev"))


def is_sensitive(path: Path) -> bool:
    """True if any component of *path* names a credential or VCS location."""
    name = path.name
    if name in _SENSITIVE_NAMES or name.startswith(_SENSITIVE_PREFIXES):
        return True
    if name.endswith(_SENSITIVE_SUFFIXES):
        return True
    return any(part in _SENSITIVE_DIRS for part in path.parts)


def _is_system_path(path: Path) -> bool:
    return any(path == d or path.is_relative_to(d) for d in _SYSTEM_DIRS)


def resolve_path(
    path_str: str,
    workspace_root: str | Path,
    *,
    mutating: bool,
    allow_escape: bool = False,
) -> Path:
    """Canonicalize *path_str* against *workspace_root* and enforce containment.

    Relative paths resolve under the workspace; absolute paths are taken
    as-is. Symlinks and ``..`` are resolved before the containment test,
    so ``../secret`` and links pointing outside the root are both caught.

    Args:
        path_str: Path argument as supplied by the model.
        workspace_root: Root directory of the session workspace.
        mutating: Whether the calling tool changes the filesystem.
        allow_escape: Permit a read-only target outside the workspace.

    Raises:
        SecurityError: escape, sensitive path on a mutating tool, or a
            malformed path.
    """
    if not path_str or "\x00" in path_str:
        raise SecurityError(path_str, "invalid path")

    workspace = Path(workspace_root).resolve()
    raw = Path(path_str).expanduser()
    target = raw.resolve() if raw.is_absolute() else (workspace / raw).resolve()

    if not target.is_relative_to(workspace):
        if mutating or not allow_escape:
            raise SecurityError(path_str, "path is outside the workspace")
        if _is_system_path(target) or is_sensitive(target):
            raise SecurityError(path_str, "path points at a protected location")
        logger.info("Read outside workspace permitted: %s", target)
        return target

    if mutating and is_sensitive(target.relative_to(workspace)):
        raise SecurityError(path_str, "path is a sensitive file")

    return target


def display_path(path: Path, workspace_root: str | Path) -> str:
    """Workspace-relative form of *path* for tool output."""
    workspace = Path(workspace_root).resolve()
    if path.is_relative_to(workspace):
        rel = path.relative_to(workspace)
        return str(rel) if str(rel) != "." else "."
    return str(path)
