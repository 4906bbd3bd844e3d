"""HTTP API for the coordination layer."""

from persona_coord.api.coordination_api import create_app, router

__all__ = ["create_app", "router"]
