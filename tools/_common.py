"""Shared types for the tools package."""

from dataclasses import dataclass
from typing import List, Optional


@dataclass
class ToolResult:
    """Result from executing a tool"""
    success: bool
    output: str
    error: Optional[str] = None

    def to_model_text(self) -> str:
        if self.success:
            return self.output or "(no output)"
        if self.output:
            return f"Error: {self.error}\n{self.output}"
        return f"Error: {self.error}"


class ToolRejected(Exception):
    """An operation was refused, by the exclusion list or by the user."""

    def __init__(
        self,
        message: str,
        feedback: Optional[str] = None,
        images: Optional[List[str]] = None,
        auto: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.feedback = feedback
        self.images: List[str] = images or []
        self.auto = auto

    def to_model_text(self) -> str:
        if self.feedback:
            return (
                f"{self.message} The user provided the following feedback:\n"
                f"<feedback>\n{self.feedback}\n</feedback>"
            )
        return self.message


@dataclass
class CommandOutcome:
    """What a finished (or killed) shell command produced"""
    exit_code: Optional[int]
    output: str = ""
    timed_out: bool = False
    terminated_by_user: bool = False
