"""Tool schema definitions (Bedrock/Anthropic Messages API)."""

from typing import Any, Dict, List


TOOL_DEFINITIONS: List[Dict[str, Any]] = [
    {
        "name": "execute_command",
        "description": "Execute a CLI command on the system. Use this when you need to perform system operations or run specific commands to accomplish any step in the user's task. You must tailor your command to the user's system and provide a clear explanation of what the command does. Prefer to execute complex CLI commands over creating executable scripts, as they are more flexible and easier to run. Commands will be executed in the current working directory.",
        "input_schema": {
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "The CLI command to execute. This should be valid for the current operating system."},
            },
            "required": ["command"],
        },
    },
    {
        "name": "list_files_top_level",
        "description": "List all files and directories at the top level of the specified directory. This should only be used for generic directories you don't necessarily need the nested structure of, like the Desktop.",
        "input_schema": {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "The path of the directory to list contents for (relative to the working directory)"},
            },
            "required": ["path"],
        },
    },
    {
        "name": "list_files_recursive",
        "description": "Recursively list all files and directories within the specified directory. This provides a comprehensive view of the project structure, and can guide decision-making on which files to process or explore further. Results respect .gitignore and are capped.",
        "input_schema": {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "The path of the directory to recursively list contents for (relative to the working directory)"},
            },
            "required": ["path"],
        },
    },
    {
        "name": "read_file",
        "description": "Read the contents of a file at the specified path. Use this when you need to examine the contents of an existing file, for example to analyze code, review text files, or extract information from configuration files.",
        "input_schema": {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "The path of the file to read (relative to the working directory)"},
            },
            "required": ["path"],
        },
    },
    {
        "name": "write_to_file",
        "description": "Write content to a file at the specified path. If the file exists, it will be overwritten with the provided content. If the file doesn't exist, it will be created. Always provide the full intended content of the file, without any truncation. This tool will automatically create any directories needed to write the file.",
        "input_schema": {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "The path of the file to write to (relative to the working directory)"},
                "content": {"type": "string", "description": "The full content to write to the file"},
            },
            "required": ["path", "content"],
        },
    },
    {
        "name": "ask_followup_question",
        "description": "Ask the user a question to gather additional information needed to complete the task. This tool should be used when you encounter ambiguities, need clarification, or require more details to proceed effectively.",
        "input_schema": {
            "type": "object",
            "properties": {
                "question": {"type": "string", "description": "The question to ask the user. This should be a clear, specific question that addresses the information you need."},
            },
            "required": ["question"],
        },
    },
    {
        "name": "attempt_completion",
        "description": "Once you've completed the task, use this tool to present the result to the user. Optionally you may provide a CLI command to showcase the result of your work, but avoid using commands like 'echo' or 'cat' that merely print text. They may respond with feedback if they are not satisfied with the result, which you can use to make improvements and try again.",
        "input_schema": {
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "Optional CLI command to execute to show a live demo of the result to the user."},
                "result": {"type": "string", "description": "The result of the task. Formulate this result in a way that is final and does not require further input from the user."},
            },
            "required": ["result"],
        },
    },
]

TOOL_NAMES = frozenset(t["name"] for t in TOOL_DEFINITIONS)
