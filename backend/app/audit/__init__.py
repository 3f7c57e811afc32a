"""
Audit — append-only mutation log and its read projections.
"""

from app.audit.recorder import record

__all__ = ["record"]
