"""Central configuration for paths, defaults and fixed user-visible texts."""

import os
from pathlib import Path


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        return default


# Data directory: override with WORKSPACE_CHAT_DATA_DIR env var
DATA_DIR = Path(
    os.environ.get("WORKSPACE_CHAT_DATA_DIR", str(Path.home() / ".workspace-chat"))
)

# Database paths
SQLITE_PATH = DATA_DIR / "conversations.db"

# Provider defaults (None means auto-detect)
DEFAULT_PROVIDER = os.environ.get("WORKSPACE_CHAT_PROVIDER") or None
DEFAULT_MODEL = os.environ.get("WORKSPACE_CHAT_MODEL") or None

# Generation options
DEFAULT_TEMPERATURE = _env_float("WORKSPACE_CHAT_TEMPERATURE", 0.7)
DEFAULT_MAX_TOKENS = _env_int("WORKSPACE_CHAT_MAX_TOKENS", 4096)

# Seconds without a chunk before a stream is abandoned (0 disables)
STREAM_IDLE_TIMEOUT = _env_float("WORKSPACE_CHAT_STREAM_IDLE_TIMEOUT", 60.0)

# Context limits
MAX_PROMPT_TERMINAL_COMMANDS = 5
MAX_TERMINAL_HISTORY = 50

# Persistence keys
CONVERSATIONS_KEY = "conversations"
ACTIVE_CONVERSATION_KEY = "active_conversation"

# Fixed assistant texts; raw exception text never reaches a conversation
ERROR_NO_PROVIDER = (
    "No AI provider is configured for this conversation. "
    "Add an API key or choose another model, then try again."
)
ERROR_STREAM_FAILED = (
    "Sorry, I encountered an error while generating a response. Please try again."
)
