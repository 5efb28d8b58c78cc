"""Listing tools: top-level and recursive, .gitignore-aware."""

import os
import logging
from typing import List

from backend import Backend
from tools._common import ToolResult
from tools.gitignore import _load_gitignore, _is_ignored

logger = logging.getLogger(__name__)

DEFAULT_MAX_RECURSIVE_FILES = 500


def _rel_to_workspace(backend: Backend, full: str) -> str:
    rel = os.path.relpath(full, backend.working_directory)
    return "" if rel == "." else rel.replace(os.sep, "/")


def list_files_top_level(path: str, backend: Backend) -> ToolResult:
    """List the direct children of a directory, respecting .gitignore."""
    try:
        target = path or "."
        if not backend.is_dir(target):
            return ToolResult(success=False, output="", error=f"Not a directory: {target}")

        gi = _load_gitignore(backend.working_directory)
        base_rel = _rel_to_workspace(backend, backend.resolve_path(target))
        lines = []
        for e in backend.list_dir(target):
            name = e["name"]
            is_dir = e["type"] == "directory"
            rel = f"{base_rel}/{name}" if base_rel else name
            if _is_ignored(rel, name, is_dir, gi):
                continue
            if is_dir:
                lines.append(f"{name}/")
            else:
                lines.append(f"{name} ({_format_size(e.get('size', 0))})")

        if not lines:
            return ToolResult(success=True, output="No files found.")
        return ToolResult(success=True, output="\n".join(lines))
    except ValueError as e:
        return ToolResult(success=False, output="", error=str(e))
    except OSError as e:
        return ToolResult(success=False, output="", error=f"Could not list {path}: {e}")


def list_files_recursive(path: str, backend: Backend,
                         max_files: int = DEFAULT_MAX_RECURSIVE_FILES) -> ToolResult:
    """Walk a directory tree and list files relative to it, capped at max_files."""
    try:
        target = path or "."
        if not backend.is_dir(target):
            return ToolResult(success=False, output="", error=f"Not a directory: {target}")

        gi = _load_gitignore(backend.working_directory)
        root_full = backend.resolve_path(target)
        results: List[str] = []
        truncated = False

        for root, dirnames, filenames in backend.walk(target):
            root_rel = _rel_to_workspace(backend, root)
            # Prune ignored directories in place so walk() never descends into them
            kept = []
            for d in dirnames:
                rel = f"{root_rel}/{d}" if root_rel else d
                if not _is_ignored(rel, d, True, gi):
                    kept.append(d)
            dirnames[:] = kept

            for name in filenames:
                rel = f"{root_rel}/{name}" if root_rel else name
                if _is_ignored(rel, name, False, gi):
                    continue
                if len(results) >= max_files:
                    truncated = True
                    break
                shown = os.path.relpath(os.path.join(root, name), root_full).replace(os.sep, "/")
                results.append(shown)
            if truncated:
                break

        if not results:
            return ToolResult(success=True, output="No files found.")
        output = "\n".join(results)
        if truncated:
            output += (
                f"\n\n(File list truncated at {max_files} entries. "
                f"Use list_files_recursive on a subdirectory to see more.)"
            )
        return ToolResult(success=True, output=output)
    except ValueError as e:
        return ToolResult(success=False, output="", error=str(e))
    except OSError as e:
        return ToolResult(success=False, output="", error=f"Could not list {path}: {e}")


def _format_size(size: int) -> str:
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024:
            return f"{size:.0f}{unit}" if unit == "B" else f"{size:.1f}{unit}"
        size /= 1024
    return f"{size:.1f}TB"
