"""Status API for the Arke mirror.

Provides read-only JSON endpoints over the replica's state file and log
using FastAPI.
"""

from .app import create_app

__all__ = ["create_app"]
