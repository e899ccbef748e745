"""Workspace path validation.

Paths arrive either absolute (``/workspace/src/App.js``) or relative to the
workspace root (``src/App.js``). Both are normalized syntactically and must
stay inside the root; symlinks inside the container are not resolved.
"""

from __future__ import annotations

from pathlib import PurePosixPath

from berth.errors import InvalidPathError


def validate_workspace_path(
    path: str,
    *,
    root: str = "/workspace",
    field_name: str = "path",
) -> str:
    """Validate and normalize ``path`` to an absolute path under ``root``.

    Rules:
    1. Must not be empty
    2. Must not contain null bytes or newlines
    3. Relative paths are taken relative to ``root``
    4. After normalization, must not escape ``root``

    Returns:
        The normalized absolute path

    Raises:
        InvalidPathError: If validation fails

    Examples:
        >>> validate_workspace_path("src/App.js")
        '/workspace/src/App.js'
        >>> validate_workspace_path("/workspace/a/../b.txt")
        '/workspace/b.txt'
        >>> validate_workspace_path("/etc/passwd")
        InvalidPathError  # outside workspace
    """
    if not path:
        raise InvalidPathError(
            message=f"{field_name} cannot be empty",
            details={"field": field_name, "reason": "empty_path"},
        )

    if "\x00" in path or "\n" in path:
        raise InvalidPathError(
            message=f"{field_name} contains invalid characters",
            details={"field": field_name, "reason": "control_character"},
        )

    root_parts = PurePosixPath(root).parts
    p = PurePosixPath(path)
    if not p.is_absolute():
        p = PurePosixPath(root) / p

    # PurePosixPath has no resolve(); fold . and .. by hand
    parts: list[str] = []
    for part in p.parts[1:]:
        if part == ".":
            continue
        if part == "..":
            if not parts:
                raise InvalidPathError(
                    message=f"{field_name} escapes workspace boundary",
                    details={"field": field_name, "reason": "path_traversal"},
                )
            parts.pop()
        else:
            parts.append(part)

    normalized = ("/",) + tuple(parts)
    if normalized[: len(root_parts)] != root_parts:
        raise InvalidPathError(
            message=f"{field_name} must be inside {root}",
            details={"field": field_name, "reason": "outside_workspace"},
        )

    return str(PurePosixPath(*normalized))
