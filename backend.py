"""
Backend abstraction for file and command operations.
All paths are confined to the working directory.
"""

import asyncio
import logging
import os
import signal
from abc import ABC, abstractmethod
from typing import List, Dict, Any, Iterator, Tuple

logger = logging.getLogger(__name__)


class Backend(ABC):
    """Abstract backend for file system and command operations."""

    @property
    @abstractmethod
    def working_directory(self) -> str:
        """Return the working directory path."""

    @abstractmethod
    def list_dir(self, path: str) -> List[Dict[str, Any]]:
        """List entries in a directory. Returns list of {name, type, size?}."""

    @abstractmethod
    def walk(self, path: str) -> Iterator[Tuple[str, List[str], List[str]]]:
        """os.walk-style traversal; callers may prune the dirnames list in place."""

    @abstractmethod
    def read_file(self, path: str) -> str:
        """Read file content as text."""

    @abstractmethod
    def write_file(self, path: str, content: str) -> None:
        """Write content to a file (create dirs as needed)."""

    @abstractmethod
    def file_exists(self, path: str) -> bool:
        """Check if a file exists."""

    @abstractmethod
    def is_dir(self, path: str) -> bool:
        """Check if a path is a directory."""

    @abstractmethod
    async def spawn(self, command: str) -> asyncio.subprocess.Process:
        """Start a shell command with piped stdin/stdout/stderr."""

    def kill_process(self, proc: asyncio.subprocess.Process) -> None:
        """Terminate a spawned process."""
        try:
            proc.kill()
        except (ProcessLookupError, OSError):
            pass

    def resolve_path(self, path: str) -> str:
        """Resolve a path relative to the working directory."""
        if os.path.isabs(path):
            return os.path.normpath(path)
        return os.path.normpath(os.path.join(self.working_directory, path))

    def relative_path(self, path: str) -> str:
        """Workspace-relative, normalized form used for approval bookkeeping."""
        resolved = self.resolve_path(path)
        rel = os.path.relpath(resolved, self.working_directory)
        return rel.replace(os.sep, "/")

    def workspace_path(self, path: str) -> str:
        """Relative form of `path`; raises ValueError if it lies outside the workspace."""
        self._ensure_under_working(self.resolve_path(path))
        return self.relative_path(path)

    def _ensure_under_working(self, resolved: str) -> None:
        """Raise ValueError if resolved path escapes the working directory."""
        real = os.path.abspath(resolved)
        wd = os.path.abspath(self.working_directory)
        if real != wd and not real.startswith(wd + os.sep):
            raise ValueError(f"Path escapes working directory: {resolved!r}")


class LocalBackend(Backend):
    """Backend that operates on the local filesystem."""

    def __init__(self, working_directory: str = "."):
        self._working_directory = os.path.abspath(working_directory)

    @property
    def working_directory(self) -> str:
        return self._working_directory

    def list_dir(self, path: str) -> List[Dict[str, Any]]:
        full = self.resolve_path(path) if path else self._working_directory
        self._ensure_under_working(full)
        entries = []
        for name in sorted(os.listdir(full)):
            child = os.path.join(full, name)
            if os.path.isdir(child):
                entries.append({"name": name, "type": "directory"})
            elif os.path.isfile(child):
                entries.append({"name": name, "type": "file", "size": os.path.getsize(child)})
        return entries

    def walk(self, path: str) -> Iterator[Tuple[str, List[str], List[str]]]:
        full = self.resolve_path(path) if path else self._working_directory
        self._ensure_under_working(full)
        for root, dirnames, filenames in os.walk(full):
            dirnames.sort()
            yield root, dirnames, sorted(filenames)

    def read_file(self, path: str) -> str:
        full = self.resolve_path(path)
        self._ensure_under_working(full)
        with open(full, "r", encoding="utf-8", errors="replace") as f:
            return f.read()

    def write_file(self, path: str, content: str) -> None:
        full = self.resolve_path(path)
        self._ensure_under_working(full)
        os.makedirs(os.path.dirname(full), exist_ok=True)
        with open(full, "w", encoding="utf-8") as f:
            f.write(content)

    def file_exists(self, path: str) -> bool:
        full = self.resolve_path(path)
        self._ensure_under_working(full)
        return os.path.exists(full)

    def is_dir(self, path: str) -> bool:
        full = self.resolve_path(path)
        self._ensure_under_working(full)
        return os.path.isdir(full)

    async def spawn(self, command: str) -> asyncio.subprocess.Process:
        return await asyncio.create_subprocess_shell(
            command,
            cwd=self._working_directory,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,  # own process group for clean kill
        )

    def kill_process(self, proc: asyncio.subprocess.Process) -> None:
        """Kill a process and its entire process group."""
        if proc.returncode is not None:
            return
        try:
            os.killpg(os.getpgid(proc.pid), signal.SIGTERM)
        except (ProcessLookupError, OSError):
            pass
        try:
            proc.kill()
        except (ProcessLookupError, OSError):
            pass
