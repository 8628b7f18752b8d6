"""Select the configured persistence backend."""

import logging

from ..config import get_db_path, get_store_backend
from ..store import ConversationStore
from .memory import MemoryStore
from .sqlite import SQLiteStore

logger = logging.getLogger(__name__)


def get_store() -> ConversationStore:
    """Return the store named by BRANCHCHAT_STORE (SQLite unless told otherwise)."""
    backend = get_store_backend()
    if backend == "memory":
        store = MemoryStore()
    else:
        if backend != "sqlite":
            logger.warning("Unknown store backend %r, falling back to sqlite", backend)
        store = SQLiteStore(get_db_path())
    logger.info("Using %s conversation store", store.name)
    return store
