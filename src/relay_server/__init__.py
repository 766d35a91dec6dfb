"""Relay server sitting between Plug chat clients and the model gateway.

Typical usage
-------------
from relay_server import create_app
app = create_app()

or, from the provided launcher:

python scripts/run_server.py --host 127.0.0.1 --port 8000
"""

from __future__ import annotations

from .server import create_app

__all__ = ["create_app"]
