"""
Configuration module for Bedrock Dev.
Handles environment variables, model specifications, pricing and approval defaults.
"""

import os
from dataclasses import dataclass
from typing import List, Dict, Any, Optional
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


MIN_REQUESTS_PER_TASK = 3
MAX_REQUESTS_PER_TASK = 100


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def _env_optional_int(name: str) -> Optional[int]:
    raw = os.getenv(name, "").strip()
    return int(raw) if raw else None


@dataclass
class AWSConfig:
    """AWS-specific configuration"""
    region: str = os.getenv("AWS_REGION", "us-east-1")
    access_key_id: str = os.getenv("AWS_ACCESS_KEY_ID", "")
    secret_access_key: str = os.getenv("AWS_SECRET_ACCESS_KEY", "")
    session_token: str = os.getenv("AWS_SESSION_TOKEN", "")
    profile_name: str = os.getenv("AWS_PROFILE", "")

    def has_explicit_credentials(self) -> bool:
        return bool(self.access_key_id and self.secret_access_key)

    def has_session_token(self) -> bool:
        return bool(self.session_token)

    def has_profile(self) -> bool:
        return bool(self.profile_name)


@dataclass
class ModelConfig:
    """Model-specific configuration"""
    model_id: str = os.getenv("BEDROCK_MODEL_ID", "us.anthropic.claude-sonnet-4-5-20250929-v1:0")
    max_tokens: int = int(os.getenv("MAX_TOKENS", "8192"))
    temperature: Optional[float] = float(os.getenv("TEMPERATURE", "")) if os.getenv("TEMPERATURE") else None


@dataclass
class AppConfig:
    """Application-specific configuration"""
    title: str = "Bedrock Dev"
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    working_directory: str = os.getenv("WORKING_DIRECTORY", ".")
    storage_directory: str = os.getenv(
        "STORAGE_DIRECTORY", os.path.join(os.path.expanduser("~"), ".bedrock-dev")
    )
    # Unset means unbounded; otherwise 3-100
    max_requests_per_task: Optional[int] = _env_optional_int("MAX_REQUESTS_PER_TASK")
    custom_instructions: str = os.getenv("CUSTOM_INSTRUCTIONS", "")
    # Approval toggles: True = run without prompting
    auto_approve_read: bool = _env_bool("AUTO_APPROVE_READ", "true")
    auto_approve_list_top_level: bool = _env_bool("AUTO_APPROVE_LIST_TOP_LEVEL", "true")
    auto_approve_list_recursive: bool = _env_bool("AUTO_APPROVE_LIST_RECURSIVE", "true")
    auto_approve_write: bool = _env_bool("AUTO_APPROVE_WRITE", "false")
    auto_approve_execute: bool = _env_bool("AUTO_APPROVE_EXECUTE", "false")
    # Commands that never exit (dev servers, watchers) are killed after this many seconds
    command_timeout: int = int(os.getenv("COMMAND_TIMEOUT", "600"))
    max_recursive_files: int = int(os.getenv("MAX_RECURSIVE_FILES", "500"))

# ============================================================
# Model Specifications -- Anthropic Claude on Bedrock
# Prices are USD per million tokens.
# ============================================================
AVAILABLE_MODELS: List[Dict[str, Any]] = [
    {
        "id": "us.anthropic.claude-sonnet-4-5-20250929-v1:0",
        "base_id": "anthropic.claude-sonnet-4-5-20250929-v1:0",
        "name": "Claude Sonnet 4.5",
        "context_window": 200000,
        "max_output_tokens": 64000,
        "supports_images": True,
        "supports_caching": True,
        "input_price": 3.0,
        "output_price": 15.0,
        "cache_write_price": 3.75,
        "cache_read_price": 0.30,
    },
    {
        "id": "us.anthropic.claude-haiku-4-5-20251001-v1:0",
        "base_id": "anthropic.claude-haiku-4-5-20251001-v1:0",
        "name": "Claude Haiku 4.5",
        "context_window": 200000,
        "max_output_tokens": 64000,
        "supports_images": True,
        "supports_caching": True,
        "input_price": 1.0,
        "output_price": 5.0,
        "cache_write_price": 1.25,
        "cache_read_price": 0.10,
    },
    {
        "id": "us.anthropic.claude-opus-4-1-20250805-v1:0",
        "base_id": "anthropic.claude-opus-4-1-20250805-v1:0",
        "name": "Claude Opus 4.1",
        "context_window": 200000,
        "max_output_tokens": 32000,
        "supports_images": True,
        "supports_caching": True,
        "input_price": 15.0,
        "output_price": 75.0,
        "cache_write_price": 18.75,
        "cache_read_price": 1.50,
    },
    {
        "id": "anthropic.claude-3-5-sonnet-20241022-v2:0",
        "base_id": "anthropic.claude-3-5-sonnet-20241022-v2:0",
        "name": "Claude 3.5 Sonnet v2",
        "context_window": 200000,
        "max_output_tokens": 8192,
        "supports_images": True,
        "supports_caching": False,
        "input_price": 3.0,
        "output_price": 15.0,
        "cache_write_price": 0.0,
        "cache_read_price": 0.0,
    },
]

# Create global config instances
aws_config = AWSConfig()
model_config = ModelConfig()
app_config = AppConfig()


def get_model_by_id(model_id: str) -> Optional[Dict[str, Any]]:
    """Get model configuration by ID"""
    for model in AVAILABLE_MODELS:
        if model["id"] == model_id or model.get("base_id") == model_id:
            return model
    return None


def get_model_config(model_id: str) -> Dict[str, Any]:
    """Get the full configuration for a model. Unknown IDs get Sonnet-class defaults."""
    model = get_model_by_id(model_id)
    if model:
        return model
    return {
        "id": model_id,
        "base_id": model_id,
        "name": model_id,
        "context_window": 200000,
        "max_output_tokens": 8192,
        "supports_images": True,
        "supports_caching": False,
        "input_price": 3.0,
        "output_price": 15.0,
        "cache_write_price": 3.75,
        "cache_read_price": 0.30,
    }


def get_max_output_tokens(model_id: str) -> int:
    return get_model_config(model_id).get("max_output_tokens", 4096)


def supports_caching(model_id: str) -> bool:
    """Check if model supports prompt caching"""
    return get_model_config(model_id).get("supports_caching", False)


def calculate_cost(
    model_id: str,
    input_tokens: int,
    output_tokens: int,
    cache_write_tokens: int = 0,
    cache_read_tokens: int = 0,
) -> float:
    """USD cost of a single request given its token usage."""
    m = get_model_config(model_id)
    return (
        m.get("input_price", 0.0) / 1_000_000 * input_tokens
        + m.get("output_price", 0.0) / 1_000_000 * output_tokens
        + m.get("cache_write_price", 0.0) / 1_000_000 * cache_write_tokens
        + m.get("cache_read_price", 0.0) / 1_000_000 * cache_read_tokens
    )


def validate_max_requests(value: Any) -> Optional[int]:
    """Parse a max-requests setting. Empty means unbounded; anything else must be 3-100."""
    if value is None:
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
    try:
        num = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"Max requests must be a number, got {value!r}")
    if num < MIN_REQUESTS_PER_TASK or num > MAX_REQUESTS_PER_TASK:
        raise ValueError(
            f"Max requests must be between {MIN_REQUESTS_PER_TASK} and {MAX_REQUESTS_PER_TASK}, got {num}"
        )
    return num


def get_credentials_info() -> str:
    if aws_config.has_profile():
        return f"Using AWS profile: {aws_config.profile_name}"
    elif aws_config.has_explicit_credentials():
        if aws_config.has_session_token():
            return "Using temporary credentials (with session token)"
        return "Using explicit credentials"
    return "Using default AWS credential chain"
