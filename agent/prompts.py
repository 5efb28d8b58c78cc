"""
System prompt composition.
Prompt fragments are plain module constants; _compose_system_prompt() assembles
them with the environment details and the user's custom instructions.
"""

import os
import platform
from typing import Optional

from tools import TOOL_DEFINITIONS

# Tool names for system prompt so the agent always knows what it can call
AVAILABLE_TOOL_NAMES = ", ".join(t["name"] for t in TOOL_DEFINITIONS)


_MOD_IDENTITY = """You are an expert software engineer working directly in the user's workspace. You can read and list files, write files, and run shell commands. Each action you take may need the user's approval before it runs; when an action is denied you receive the denial (and any feedback from the user) as the tool result, and you should adapt rather than retry the same action."""

_MOD_DOING_TASKS = """<doing_tasks>
- Work through the task step by step, using one tool per message. Wait for each tool result before deciding the next step.
- Read files before changing them. When writing a file, always provide its complete intended content.
- Prefer running a command over writing a throwaway script. Tailor commands to the user's shell and operating system.
- If something is genuinely ambiguous, use ask_followup_question. Do not ask for information you can find yourself.
- When the task is done, call attempt_completion with a final result. Do not end the result with a question or an offer of further help.
</doing_tasks>"""

_MOD_TONE_AND_STYLE = """<tone_and_style>
- Be concise and direct.
- Never refer to tool names when speaking to the user.
- Don't apologize repeatedly. If something unexpected happens, explain and proceed.
</tone_and_style>"""

_MOD_ENVIRONMENT = """<environment>
Operating system: {os_name}
Default shell: {shell}
Current working directory: {cwd}
Available tools: {tools}
</environment>"""

NO_TOOLS_USED_NUDGE = (
    "[ERROR] You did not use a tool in your previous response! Please retry with a tool use. "
    "If the task is complete, call attempt_completion. If you need more information from the "
    "user, call ask_followup_question."
)


def _format_environment(working_directory: str) -> str:
    return _MOD_ENVIRONMENT.format(
        os_name=platform.system() or "unknown",
        shell=os.environ.get("SHELL", "/bin/sh"),
        cwd=os.path.abspath(working_directory),
        tools=AVAILABLE_TOOL_NAMES,
    )


def _compose_system_prompt(working_directory: str,
                           custom_instructions: Optional[str] = None) -> str:
    """Assemble the system prompt sent on every model turn."""
    parts = [
        _MOD_IDENTITY,
        _MOD_DOING_TASKS,
        _MOD_TONE_AND_STYLE,
        _format_environment(working_directory),
    ]
    if custom_instructions and custom_instructions.strip():
        parts.append(
            "<user_custom_instructions>\n"
            "The following additional instructions are provided by the user. "
            "Follow them as closely as you can without interfering with the tool use rules above.\n\n"
            f"{custom_instructions.strip()}\n"
            "</user_custom_instructions>"
        )
    return "\n\n".join(parts)
