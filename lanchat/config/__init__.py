"""Configuration module for lanchat."""

from lanchat.config.loader import load_config
from lanchat.config.schema import ChatConfig

__all__ = ["ChatConfig", "load_config"]
