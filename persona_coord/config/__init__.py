"""Configuration for the persona coordination layer."""

from persona_coord.config.coordination_config import CoordinationConfig

__all__ = ["CoordinationConfig"]
