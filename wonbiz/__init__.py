"""Top-level package for wonbiz."""

from . import chat, client, config, pipeline, search, storage

__all__ = ["chat", "client", "config", "pipeline", "search", "storage"]
