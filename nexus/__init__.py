"""Nexus - chat with an LLM that can run commands across your machines."""

__version__ = "0.1.0"

from nexus.config import Config

__all__ = ["Config", "__version__"]
