"""Factory pattern for creating record store instances."""

from gradesync.adapters.events.in_memory import InMemoryChangeFeed
from gradesync.adapters.store.base import AbstractRecordStore
from gradesync.adapters.store.http_client import HttpRecordStore
from gradesync.adapters.store.in_memory import InMemoryRecordStore
from gradesync.core.config import StoreSettings, settings
from gradesync.core.errors import ValidationAppError


def create_record_store(
    store_settings: StoreSettings | None = None,
    *,
    feed: InMemoryChangeFeed | None = None,
) -> AbstractRecordStore:
    """Instantiate the record store named by ``STORE_PROVIDER``.

    Args:
        store_settings: Optional settings; defaults to the global settings.
        feed: Change feed the in-memory store publishes to.

    Raises:
        ValidationAppError: If provider-specific requirements are not met.
    """
    cfg = store_settings or settings.store
    provider = cfg.provider.lower()

    if provider == "memory":
        return InMemoryRecordStore(feed=feed)

    if provider == "http":
        if not cfg.base_url:
            raise ValidationAppError(
                code="store_missing_base_url",
                message="HTTP store provider requires STORE_BASE_URL environment variable",
            )
        return HttpRecordStore(
            base_url=cfg.base_url,
            api_key=cfg.api_key,
            timeout_seconds=cfg.timeout_seconds,
        )

    raise ValidationAppError(
        code="store_unknown_provider",
        message=f"Unknown record store provider: '{provider}'. Supported providers: memory, http",
    )
