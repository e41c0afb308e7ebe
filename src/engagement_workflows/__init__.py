"""Engagement Workflows.

Instantiates versioned workflow templates per client engagement and progresses
them task-by-task:
- instance materialisation from a template graph
- task completion with outcome-based routing
- explicit, caller-gated stage advancement
- an append-only event stream for every transition
"""

__version__ = "0.1.0"

from engagement_workflows.engine.config import EngineSettings

__all__ = ["__version__", "EngineSettings"]
