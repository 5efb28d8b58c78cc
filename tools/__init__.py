"""
Tool definitions and implementations for the coding agent.
Each tool has an Anthropic-compatible schema and an implementation function.
Tools use a Backend abstraction for file/command operations, and every
workspace operation is gated by the ApprovalGate through ToolExecutor.
"""

from tools._common import ToolResult, ToolRejected, CommandOutcome  # noqa: F401
from tools.gitignore import invalidate_gitignore_cache  # noqa: F401
from tools.file_ops import read_file, write_file, preview_write, WritePreview  # noqa: F401
from tools.search_ops import list_files_top_level, list_files_recursive  # noqa: F401
from tools.schemas import (  # noqa: F401
    TOOL_DEFINITIONS,
    TOOL_NAMES,
)
from tools.executor import ToolExecutor  # noqa: F401
