from __future__ import annotations

import re
from pathlib import Path

from open_core.errors import ToolSecurityError

_SENSITIVE_PATTERNS = (
    re.compile(r"(^|/)\.git(/|$)"),
    re.compile(r"(^|/)\.env(\.[^/]*)?$"),
    re.compile(r"(^|/)id_(rsa|dsa|ecdsa|ed25519)(\.pub)?$"),
    re.compile(r"\.(pem|key|p12|pfx)$"),
)


def working_root(working_directory: str | None) -> Path:
    return Path(working_directory or Path.cwd()).resolve()


def resolve_within(working_directory: str | None, path_value: str, *, tool_name: str | None = None) -> Path:
    root = working_root(working_directory)
    path = Path(path_value).expanduser()
    candidate = path if path.is_absolute() else root / path
    resolved = candidate.resolve()
    if not is_within(root, resolved):
        raise ToolSecurityError(f"Path is outside working directory: {path_value}", tool_name=tool_name)
    return resolved


def is_within(root: Path, path: Path) -> bool:
    try:
        path.relative_to(root)
        return True
    except ValueError:
        return False


def ensure_not_sensitive(root: Path, path: Path, *, tool_name: str | None = None) -> None:
    relative = path.relative_to(root).as_posix() if is_within(root, path) else path.as_posix()
    for pattern in _SENSITIVE_PATTERNS:
        if pattern.search(relative):
            raise ToolSecurityError(f"Refusing to modify sensitive path: {relative}", tool_name=tool_name)


def display_path(working_directory: str | None, path: Path) -> str:
    root = working_root(working_directory)
    if is_within(root, path):
        return path.relative_to(root).as_posix() or "."
    return str(path)
