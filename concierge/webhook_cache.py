"""In-memory webhook result cache.

Bridges the vendor's end-of-call webhook to the in-process waiter in the call
client: the webhook receiver writes, the waiter reads.

Notes:
- Entries do not survive process restarts; the database is the system of record.
- Entries expire after a TTL. Expired entries are dropped lazily on read, and
  every write purges whatever has expired so unread entries do not pile up.
- One writer per call id at a time, so a plain dict with last-writer-wins
  entries is enough.
"""

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from concierge.call_results import utcnow_iso
from concierge.logging_config import get_logger
from concierge.models import CallResult, DataStatus

logger = get_logger(__name__)


@dataclass
class CacheEntry:
    result: CallResult
    stored_at: float
    expires_at: float


class WebhookCache:
    """
    Call results keyed by vendor call id.
    """

    def __init__(self, ttl_seconds: float = 1800, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}

    def set(self, call_id: str, result: CallResult, ttl: Optional[float] = None) -> None:
        """
        Store (or replace) the result for a call.

        Args:
            call_id: Vendor call id
            result: Result as received so far
            ttl: Seconds to keep the entry; defaults to the cache TTL
        """
        self.purge_expired()
        now = self._clock()
        self._entries[call_id] = CacheEntry(result, now, now + (ttl or self.ttl_seconds))
        logger.debug(
            "webhook_cache_set",
            call_id=call_id,
            data_status=result.data_status.value if result.data_status else None,
            size=len(self._entries),
        )

    def get(self, call_id: str) -> Optional[CallResult]:
        """
        Retrieve the cached result for a call.

        Returns:
            The result, or None if missing or expired
        """
        entry = self._entries.get(call_id)
        if entry is None:
            return None

        if self._clock() > entry.expires_at:
            logger.debug("webhook_cache_expired", call_id=call_id)
            self._entries.pop(call_id, None)
            return None

        return entry.result

    def has(self, call_id: str) -> bool:
        return self.get(call_id) is not None

    def _replace(self, call_id: str, result: CallResult) -> None:
        self._entries[call_id].result = result

    def update_fetch_status(self, call_id: str, status: DataStatus, error: Optional[str] = None) -> bool:
        """
        Move an entry to a new data status.

        Entering FETCHING counts one fetch attempt; COMPLETE stamps fetched_at.

        Returns:
            False if the call is not cached
        """
        current = self.get(call_id)
        if current is None:
            logger.warning("webhook_cache_update_missing", call_id=call_id, data_status=status.value)
            return False

        updates: Dict[str, Any] = {"data_status": status}
        if status == DataStatus.FETCHING:
            updates["fetch_attempts"] = current.fetch_attempts + 1
        if status == DataStatus.COMPLETE:
            updates["fetched_at"] = utcnow_iso()
        if error:
            updates["fetch_error"] = error

        updated = current.model_copy(update=updates)
        self._replace(call_id, updated)
        logger.debug(
            "webhook_cache_status_updated",
            call_id=call_id,
            data_status=status.value,
            fetch_attempts=updated.fetch_attempts,
        )
        return True

    def store_enriched(self, call_id: str, result: CallResult) -> bool:
        """
        Replace an entry with its enriched (complete) version.

        Returns:
            False if the call is not cached
        """
        if self.get(call_id) is None:
            logger.warning("webhook_cache_merge_missing", call_id=call_id)
            return False

        self._replace(call_id, result.model_copy(update={"data_status": DataStatus.COMPLETE}))
        logger.info(
            "webhook_cache_enriched",
            call_id=call_id,
            transcript_length=len(result.transcript),
            has_summary=bool(result.analysis.summary),
        )
        return True

    def delete(self, call_id: str) -> bool:
        existed = self._entries.pop(call_id, None) is not None
        if existed:
            logger.debug("webhook_cache_deleted", call_id=call_id)
        return existed

    def purge_expired(self) -> int:
        """Drop every expired entry. Returns the number removed."""
        now = self._clock()
        expired = [call_id for call_id, entry in self._entries.items() if now > entry.expires_at]
        for call_id in expired:
            del self._entries[call_id]
        if expired:
            logger.info("webhook_cache_purged", removed=len(expired), remaining=len(self._entries))
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> Dict[str, Any]:
        self.purge_expired()
        return {
            "size": len(self),
            "ttl_seconds": self.ttl_seconds,
            "entries": [
                {
                    "call_id": call_id,
                    "data_status": entry.result.data_status.value if entry.result.data_status else None,
                    "stored_at": entry.stored_at,
                    "expires_at": entry.expires_at,
                }
                for call_id, entry in self._entries.items()
            ],
        }

    def clear(self) -> None:
        self._entries.clear()
