"""Workflow engine components.

Provides:
- Settings loaded from .env
- Structured logging
- A pluggable object store (in-memory or JSON files)
- The materialiser, progression engine and administration operations
- A small CLI surface
"""
