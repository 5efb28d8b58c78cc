"""File operation tools: read_file, write_to_file and the write preview shown before approval."""

import difflib
import logging
import os
from dataclasses import dataclass
from typing import Optional

from backend import Backend
from tools._common import ToolResult
from tools.gitignore import invalidate_gitignore_cache

logger = logging.getLogger(__name__)

_MAX_FULL_READ_LINES = 1000
_HEAD_LINES = 400
_TAIL_LINES = 100


def _require_path(path: str, name: str = "path") -> Optional[ToolResult]:
    """Return an error ToolResult if path is empty/whitespace; else None."""
    if not (path or "").strip():
        return ToolResult(success=False, output="", error=f"{name} is required")
    return None


def read_file(path: str, backend: Backend) -> ToolResult:
    """Read a file inside the workspace. Very long files are cut to head + tail."""
    err = _require_path(path)
    if err:
        return err
    try:
        if not backend.file_exists(path):
            return ToolResult(success=False, output="", error=f"File not found: {path}")
        if backend.is_dir(path):
            return ToolResult(success=False, output="", error=f"Path is a directory: {path}")

        content = backend.read_file(path)
        lines = content.splitlines()
        total = len(lines)
        if total <= _MAX_FULL_READ_LINES:
            return ToolResult(success=True, output=content)

        omitted = total - _HEAD_LINES - _TAIL_LINES
        parts = [
            "\n".join(lines[:_HEAD_LINES]),
            f"\n... ({omitted} lines omitted, file has {total} lines) ...\n",
            "\n".join(lines[-_TAIL_LINES:]),
        ]
        return ToolResult(success=True, output="\n".join(parts))
    except ValueError as e:
        return ToolResult(success=False, output="", error=str(e))
    except OSError as e:
        return ToolResult(success=False, output="", error=f"Could not read {path}: {e}")


def _compact_diff(old_content: str, new_content: str, path: str, max_lines: int = 60) -> str:
    """Generate a compact unified diff for display."""
    old_lines = old_content.splitlines(keepends=True)
    new_lines = new_content.splitlines(keepends=True)
    diff = list(difflib.unified_diff(old_lines, new_lines, fromfile=path, tofile=path, lineterm=""))
    if not diff:
        return ""
    if len(diff) > max_lines:
        diff = diff[:max_lines] + [f"... ({len(diff) - max_lines} more diff lines)"]
    return "\n".join(line.rstrip() for line in diff)


def _new_file_diff(content: str, path: str, max_lines: int = 30) -> str:
    lines = content.splitlines()
    preview = lines[:max_lines]
    diff_text = f"--- /dev/null\n+++ {path}\n@@ -0,0 +1,{len(preview)} @@\n"
    diff_text += "\n".join(f"+{l}" for l in preview)
    if len(lines) > max_lines:
        diff_text += f"\n+... ({len(lines) - max_lines} more lines)"
    return diff_text


@dataclass
class WritePreview:
    """What a pending write would do, attached to the approval prompt"""
    path: str
    is_new: bool
    diff: str
    unchanged: bool = False

    def to_data(self):
        return {
            "path": self.path,
            "action": "new_file" if self.is_new else "edited_existing_file",
            "diff": self.diff,
            "unchanged": self.unchanged,
        }


def preview_write(path: str, content: str, backend: Backend) -> WritePreview:
    """Compute the diff of a write without touching the file."""
    old_content = None
    try:
        if backend.file_exists(path) and not backend.is_dir(path):
            old_content = backend.read_file(path)
    except OSError as e:
        logger.debug(f"Could not read {path} for preview: {e}")

    if old_content is None:
        return WritePreview(path=path, is_new=True, diff=_new_file_diff(content, path))
    diff_text = _compact_diff(old_content, content, path)
    return WritePreview(path=path, is_new=False, diff=diff_text, unchanged=not diff_text)


def write_file(path: str, content: str, backend: Backend) -> ToolResult:
    """Create a new file or completely overwrite an existing file."""
    err = _require_path(path)
    if err:
        return err
    try:
        preview = preview_write(path, content, backend)
        backend.write_file(path, content)
        if os.path.basename(path) == ".gitignore":
            invalidate_gitignore_cache(backend.working_directory)
        line_count = content.count("\n") + (1 if content and not content.endswith("\n") else 0)
        summary = f"{'Created' if preview.is_new else 'Wrote'} {line_count} lines to {path}"
        if preview.diff:
            return ToolResult(success=True, output=f"{summary}\n{preview.diff}")
        return ToolResult(success=True, output=f"{summary} (no changes)")
    except ValueError as e:
        return ToolResult(success=False, output="", error=str(e))
    except OSError as e:
        return ToolResult(success=False, output="", error=f"Could not write {path}: {e}")
