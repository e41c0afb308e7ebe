"""Console entrypoint shim.

The CLI is implemented in `engagement_workflows.engine.main`.
"""

from __future__ import annotations

from engagement_workflows.engine.main import main

__all__ = ["main"]


if __name__ == "__main__":
    raise SystemExit(main())
