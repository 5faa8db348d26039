"""Process-wide store facade over the pluggable storage backends."""

from typing import Optional

from skillboard.config import settings
from skillboard.storage import InMemoryVerificationStore, SqlVerificationStore, VerificationStore
from utils.logging_utils import get_tagged_logger, mask_db_url

logger = get_tagged_logger(__name__, tag="store_manager")


def _init_store() -> VerificationStore:
    """Initialize the backing store based on configuration."""
    backend = settings.store_backend
    logger.debug(f"Initializing verification store: backend='{backend}', db_url='{mask_db_url(settings.database_url)}'")
    if backend == "memory":
        return InMemoryVerificationStore()
    if backend == "sql":
        return SqlVerificationStore.from_url(settings.database_url)
    raise ValueError(f"Unknown store backend '{backend}'")


_store: Optional[VerificationStore] = None


def get_store() -> VerificationStore:
    """Return the process-wide store, creating it on first use."""
    global _store
    if _store is None:
        _store = _init_store()
    return _store


def set_store(store: VerificationStore) -> None:
    """Swap the process-wide store (used by the app factory and tests)."""
    global _store
    _store = store


def use_in_memory_store_for_tests() -> InMemoryVerificationStore:
    """Override store for tests to ensure isolation and determinism."""
    store = InMemoryVerificationStore()
    set_store(store)
    return store
