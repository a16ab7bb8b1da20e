"""Storage engine selection."""
from ..storage.base import EventStore
from ..storage.memory import InMemoryEventStore
from ..storage.redis_store import RedisEventStore
from ..storage.sqlite import SQLiteEventStore
from ..config import get_settings
import structlog

log = structlog.get_logger()
settings = get_settings()


def create_store() -> EventStore:
    """
    Create the storage engine based on configuration.

    Returns:
        EventStore instance based on the STORE_BACKEND setting
    """
    if settings.STORE_BACKEND == "redis":
        if not settings.REDIS_URL:
            log.warning(
                "store.fallback",
                requested="redis",
                actual="memory",
                reason="REDIS_URL not configured"
            )
            return InMemoryEventStore()

        log.info("store.selected", type="redis", url=str(settings.REDIS_URL))
        return RedisEventStore()
    if settings.STORE_BACKEND == "sqlite":
        log.info("store.selected", type="sqlite", path=settings.SQLITE_PATH)
        return SQLiteEventStore(settings.SQLITE_PATH)

    log.info("store.selected", type="memory")
    return InMemoryEventStore()


# Global storage engine instance
store = create_store()
