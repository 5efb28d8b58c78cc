"""
Session context shared by the controller, the agent loop and the tool executor.
Holds the approval gate, the live settings and the storage handles, so nothing
reaches for module-level state while a task runs.
"""

from dataclasses import dataclass, field
from typing import Optional

from config import AppConfig, ModelConfig, app_config, model_config, validate_max_requests
from sessions import ConversationStore, GlobalStateStore

from .approval import ApprovalGate


@dataclass
class TaskSettings:
    """User-adjustable settings read by the loop on every turn"""
    model_id: str = field(default_factory=lambda: model_config.model_id)
    max_requests: Optional[int] = None
    custom_instructions: str = ""
    max_tokens: int = 8192
    temperature: Optional[float] = None
    command_timeout: int = 600
    max_recursive_files: int = 500

    @classmethod
    def from_config(cls, app: AppConfig = app_config, model: ModelConfig = model_config) -> "TaskSettings":
        return cls(
            model_id=model.model_id,
            max_requests=validate_max_requests(app.max_requests_per_task),
            custom_instructions=app.custom_instructions,
            max_tokens=model.max_tokens,
            temperature=model.temperature,
            command_timeout=app.command_timeout,
            max_recursive_files=app.max_recursive_files,
        )


@dataclass
class TaskSession:
    """Everything one TaskController hands to the loop it runs"""
    gate: ApprovalGate
    settings: TaskSettings
    store: ConversationStore
    state_store: GlobalStateStore
