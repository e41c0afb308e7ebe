"""Workflow domain concepts.

This package holds first-class types for:
- the template graph and the instance graph (``models``)
- explicit status transitions (``state_machine``)
- outcome routing actions (``outcomes``)
- the append-only event stream (``events``)
- materialisation, progression, progress accounting and administration

Control flow is deterministic: every transition is an explicit call, and every
call leaves the graph in a state a retry can resume from.
"""

__all__: list[str] = []
