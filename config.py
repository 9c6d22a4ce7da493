"""
Configuration module for toolturn.
Handles environment variables, model context windows and engine settings.
"""

import os
from dataclasses import dataclass
from typing import List, Dict, Any, Optional
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


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
    # Model used for context summarization; falls back to model_id
    compact_model_id: str = os.getenv("COMPACT_MODEL_ID", "")
    max_tokens: int = int(os.getenv("MAX_TOKENS", "16000"))
    temperature: Optional[float] = float(os.getenv("TEMPERATURE", "1")) if os.getenv("TEMPERATURE") else None


@dataclass
class AppConfig:
    """Application-specific configuration"""
    title: str = "toolturn"
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    log_file: str = os.getenv("LOG_FILE", "toolturn.log")
    working_directory: str = os.getenv("WORKING_DIRECTORY", ".")
    # Root for checkpoints, sessions, notebooks, todos and the sensitive-command rules
    data_dir: str = os.path.expanduser(os.getenv("TOOLTURN_HOME", os.path.join("~", ".toolturn")))
    max_tool_iterations: int = int(os.getenv("MAX_TOOL_ITERATIONS", "200"))
    sub_agent_max_iterations: int = int(os.getenv("SUB_AGENT_MAX_ITERATIONS", "50"))
    auto_approve_reads: bool = os.getenv("AUTO_APPROVE_READS", "true").lower() == "true"
    # YOLO mode: run tool calls without confirmation unless a sensitive-command rule matches
    unattended_mode: bool = os.getenv("UNATTENDED_MODE", "false").lower() == "true"
    # Context compression
    compress_threshold: int = int(os.getenv("COMPRESS_THRESHOLD", "70"))
    keep_recent_rounds: int = int(os.getenv("KEEP_RECENT_ROUNDS", "3"))
    min_truncation_length: int = int(os.getenv("MIN_TRUNCATION_LENGTH", "500"))
    # Terminal tool
    terminal_timeout: int = int(os.getenv("TERMINAL_TIMEOUT", "120"))
    terminal_max_output: int = int(os.getenv("TERMINAL_MAX_OUTPUT", "20000"))
    # Refuse catastrophic commands (rm -rf /, mkfs, dd if=, writes to /dev/sd*) even after approval
    block_destructive_commands: bool = os.getenv("BLOCK_DESTRUCTIVE_COMMANDS", "true").lower() == "true"


# Context windows for the Anthropic models served through Bedrock
AVAILABLE_MODELS: List[Dict[str, Any]] = [
    {
        "id": "us.anthropic.claude-opus-4-1-20250805-v1:0",
        "name": "Claude Opus 4.1",
        "context_window": 200000,
        "max_output_tokens": 32000,
    },
    {
        "id": "us.anthropic.claude-sonnet-4-5-20250929-v1:0",
        "name": "Claude Sonnet 4.5",
        "context_window": 200000,
        "max_output_tokens": 64000,
    },
    {
        "id": "us.anthropic.claude-haiku-4-5-20251001-v1:0",
        "name": "Claude Haiku 4.5",
        "context_window": 200000,
        "max_output_tokens": 64000,
    },
    {
        "id": "us.anthropic.claude-sonnet-4-20250514-v1:0",
        "name": "Claude Sonnet 4",
        "context_window": 200000,
        "max_output_tokens": 64000,
    },
    {
        "id": "anthropic.claude-3-5-haiku-20241022-v1:0",
        "name": "Claude 3.5 Haiku",
        "context_window": 200000,
        "max_output_tokens": 8192,
    },
]

# Create global config instances
aws_config = AWSConfig()
model_config = ModelConfig()
app_config = AppConfig()


def get_model_by_id(model_id: str) -> Optional[Dict[str, Any]]:
    """Get model configuration by ID"""
    for model in AVAILABLE_MODELS:
        if model["id"] == model_id:
            return model
    return None


def get_context_window(model_id: str) -> int:
    model = get_model_by_id(model_id)
    return model.get("context_window", 200000) if model else 200000


def get_max_output_tokens(model_id: str) -> int:
    model = get_model_by_id(model_id)
    return model.get("max_output_tokens", 4096) if model else 4096


def checkpoints_dir() -> str:
    return os.path.join(app_config.data_dir, "checkpoints")


def sessions_dir() -> str:
    return os.path.join(app_config.data_dir, "sessions")


def notebook_dir() -> str:
    return os.path.join(app_config.data_dir, "notebook")


def todo_dir() -> str:
    return os.path.join(app_config.data_dir, "todos")


def undo_log_path() -> str:
    return os.path.join(app_config.data_dir, "undo-log.json")


def sensitive_commands_path() -> str:
    return os.path.join(app_config.data_dir, "sensitive-commands.json")


def get_credentials_info() -> str:
    if aws_config.has_profile():
        return f"Using AWS profile: {aws_config.profile_name}"
    elif aws_config.has_explicit_credentials():
        if aws_config.has_session_token():
            return "Using temporary credentials (with session token)"
        return "Using explicit credentials"
    return "Using default credential chain"
