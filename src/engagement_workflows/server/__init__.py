"""FastAPI server adapter for the workflow engine.

Design intent:
- Keep progression logic in `engagement_workflows.engine.*`
- Keep HTTP concerns (routing, CORS, error mapping) here
"""

from __future__ import annotations

__all__ = ["create_app"]

from engagement_workflows.server.app import create_app
