"""
Configuration module for the chat backend.
Loads settings from environment variables or a .env file.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import List

import structlog
from dotenv import load_dotenv

# Load .env file from project root (two levels above the package directory)
_project_root = Path(__file__).parent.parent.parent
load_dotenv(_project_root / ".env")


class Config:
    """Application configuration."""

    # Generation backend
    GEMINI_API_KEY: str = os.getenv("GEMINI_API_KEY", "")
    DEFAULT_MODEL: str = os.getenv("DEFAULT_MODEL", "gemini-1.5-flash")
    MODELS: List[str] = [
        name.strip()
        for name in os.getenv("MODELS", "gemini-1.5-flash,gemini-1.5-pro").split(",")
        if name.strip()
    ]

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Usage limits, 0 disables a limit
    MESSAGES_PER_MINUTE: int = int(os.getenv("MESSAGES_PER_MINUTE", "0"))
    RATE_LIMIT_WINDOW: int = int(os.getenv("RATE_LIMIT_WINDOW", "60"))
    MAX_CONVERSATIONS: int = int(os.getenv("MAX_CONVERSATIONS", "0"))
    MAX_MESSAGES_PER_CONVERSATION: int = int(os.getenv("MAX_MESSAGES_PER_CONVERSATION", "0"))
    MAX_MESSAGE_LENGTH: int = int(os.getenv("MAX_MESSAGE_LENGTH", "0"))
    MAX_FILES: int = int(os.getenv("MAX_FILES", "0"))
    MAX_FILE_SIZE: int = int(os.getenv("MAX_FILE_SIZE", str(10 * 1024 * 1024)))

    # Streaming
    STREAM_PAD_LENGTH: int = int(os.getenv("STREAM_PAD_LENGTH", "16"))
    BUFFER_FLUSH_SIZE: int = int(os.getenv("BUFFER_FLUSH_SIZE", "4096"))


config = Config()


@dataclass
class UsageLimits:
    """Quota policy checked before a turn touches the tree. 0 means unlimited."""

    messages_per_minute: int = 0
    rate_limit_window: int = 60
    conversations: int = 0
    messages: int = 0
    message_length: int = 0
    files: int = 0
    file_size: int = 10 * 1024 * 1024

    @classmethod
    def from_config(cls, cfg: Config = config) -> "UsageLimits":
        return cls(
            messages_per_minute=cfg.MESSAGES_PER_MINUTE,
            rate_limit_window=cfg.RATE_LIMIT_WINDOW,
            conversations=cfg.MAX_CONVERSATIONS,
            messages=cfg.MAX_MESSAGES_PER_CONVERSATION,
            message_length=cfg.MAX_MESSAGE_LENGTH,
            files=cfg.MAX_FILES,
            file_size=cfg.MAX_FILE_SIZE,
        )


def configure_logging(level: str = config.LOG_LEVEL) -> None:
    """Route structlog output through a level filter."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
        cache_logger_on_first_use=True,
    )
