"""Infra layer utilities (audit storage, plugin loading)."""

from .plugins import build_collaborator, load_object
from .storage import AuditLog, SQLiteManager

__all__ = ["AuditLog", "SQLiteManager", "build_collaborator", "load_object"]
