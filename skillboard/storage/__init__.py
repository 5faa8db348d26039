"""Verification storage backends."""

from .base import VerificationStore
from .memory import InMemoryVerificationStore
from .migrations import MIGRATIONS, apply_migrations
from .sql import SqlVerificationStore

__all__ = [
    "VerificationStore",
    "InMemoryVerificationStore",
    "SqlVerificationStore",
    "MIGRATIONS",
    "apply_migrations",
]
