"""Compiler and session configuration loading and validation."""

from mill_assist.configs.loader import (
    AssistantConfig,
    CompilerConfig,
    ConfigError,
    MessagesConfig,
    SessionConfig,
    load_config,
)

__all__ = [
    "AssistantConfig",
    "CompilerConfig",
    "ConfigError",
    "MessagesConfig",
    "SessionConfig",
    "load_config",
]
