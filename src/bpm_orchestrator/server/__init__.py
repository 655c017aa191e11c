"""REST API over the automation services.

Business logic stays in the service packages; routing, CORS and error mapping
live here.
"""

from __future__ import annotations

__all__ = ["create_app"]

from bpm_orchestrator.server.app import create_app
