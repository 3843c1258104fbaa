"""REST surface for canonical settings."""

from tutorsync.api.server import create_app

__all__ = ["create_app"]
