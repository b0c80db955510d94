"""Background recording of rule trigger counts.

Trigger counts are observability metadata: the approval decision never
waits for them and a failed increment is logged, not raised. Concurrent
evaluations may interleave, so counts are best-effort on backends without
atomic increments.
"""

import logging
import threading
from concurrent import futures
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import UTC, datetime

from ledger.storage.service import KeyValueStore

logger = logging.getLogger(__name__)


def rules_pk(company_id: str) -> str:
    return f"RULES#{company_id}"


class TriggerCounter:
    """Fire-and-forget trigger count increments on a small thread pool."""

    def __init__(self, max_workers: int = 2) -> None:
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="rule-trigger"
        )
        self._pending: set[Future] = set()
        self._lock = threading.Lock()
        self.failures = 0

    def record(self, store: KeyValueStore, company_id: str, rule_id: str) -> None:
        """Schedule an increment of ``trigger_count`` and return immediately."""
        future = self._executor.submit(self._increment, store, company_id, rule_id)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._discard)

    def _increment(self, store: KeyValueStore, company_id: str, rule_id: str) -> None:
        try:
            store.increment(
                rules_pk(company_id),
                rule_id,
                "trigger_count",
                updates={"last_triggered_at": datetime.now(UTC).isoformat()},
            )
        except Exception as e:
            with self._lock:
                self.failures += 1
            logger.warning(f"Failed to record trigger for rule {rule_id} ({company_id}): {e}")

    def _discard(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def wait(self, timeout: float | None = None) -> None:
        """Block until all scheduled increments have finished."""
        with self._lock:
            pending = list(self._pending)
        futures.wait(pending, timeout=timeout)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)
