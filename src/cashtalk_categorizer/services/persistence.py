import asyncio
import datetime as dt
import uuid
from collections import deque
from typing import Any

from cashtalk_categorizer.core import settings
from cashtalk_categorizer.integration.persistence import (
    TRANSACTIONS_TABLE,
    PersistenceBackend,
    PersistenceError,
)
from cashtalk_categorizer.logger import get_logger
from cashtalk_categorizer.models import Transaction

logger = get_logger(__name__)

RECENT_LIMIT = 20
SOURCE_NAME = "cashtalk"


def build_row(transaction: Transaction, user_id: str | None) -> dict[str, Any]:
    row = transaction.model_dump(mode="json")
    row.update({
        "id": uuid.uuid4().hex,
        "user_id": user_id,
        "source": SOURCE_NAME,
        "synced": False,
        "created_at": dt.datetime.now(dt.timezone.utc).isoformat(),
    })
    return row


class TransactionPersistence:
    """
    Writes routed transactions to the ``transactions`` table. A failed write
    is retried once after ``retry_delay`` seconds; rows that still fail wait
    in the offline queue until :meth:`sync` succeeds for them.
    """

    def __init__(
        self,
        backend: PersistenceBackend,
        retry_delay: float | None = None,
    ) -> None:
        self.backend = backend
        self.retry_delay = settings.retry_delay_seconds() if retry_delay is None else retry_delay
        self.offline_queue: list[dict[str, Any]] = []
        self.recent: deque[dict[str, Any]] = deque(maxlen=RECENT_LIMIT)
        self._sync_lock = asyncio.Lock()

    async def _write(self, row: dict[str, Any]) -> None:
        # Keyed on the row id, so replaying a queued row or a correction never duplicates it.
        await self.backend.upsert(TRANSACTIONS_TABLE, [{**row, "synced": True}])
        row["synced"] = True

    async def _write_or_queue(self, row: dict[str, Any]) -> None:
        try:
            await self._write(row)
        except PersistenceError as exc:
            logger.warning(
                "[SYNC] Saving transaction failed: %s. Retrying in %.1fs.",
                exc,
                self.retry_delay,
            )
            await asyncio.sleep(self.retry_delay)
            try:
                await self._write(row)
            except PersistenceError as retry_exc:
                logger.error("[SYNC] Retry failed, queueing transaction offline: %s", retry_exc)
                self.offline_queue.append(row)

    async def save(self, transaction: Transaction, user_id: str | None = None) -> dict[str, Any]:
        row = build_row(transaction, user_id)
        await self._write_or_queue(row)
        self.recent.appendleft(row)
        return row

    async def update(self, row: dict[str, Any], transaction: Transaction) -> dict[str, Any]:
        """
        Rewrite a previously saved row with the transaction's current fields.
        A row still waiting offline is replaced in the queue instead.
        """
        updated = {**row, **transaction.model_dump(mode="json"), "synced": False}
        async with self._sync_lock:
            queued = next(
                (index for index, item in enumerate(self.offline_queue) if item["id"] == row["id"]),
                None,
            )
            if queued is not None:
                self.offline_queue[queued] = updated
        if queued is None:
            await self._write_or_queue(updated)
        self.recent = deque(
            (updated if item["id"] == row["id"] else item for item in self.recent),
            maxlen=RECENT_LIMIT,
        )
        return updated

    async def sync(self) -> dict[str, int]:
        async with self._sync_lock:
            if not self.offline_queue:
                return {"synced": 0, "pending": 0}

            queued = list(self.offline_queue)
            logger.info("[SYNC] Syncing %s offline transactions...", len(queued))
            succeeded: list[dict[str, Any]] = []
            failed: list[dict[str, Any]] = []
            for row in queued:
                try:
                    await self._write(row)
                except PersistenceError as exc:
                    logger.debug("[SYNC] Transaction %s still failing: %s", row.get("id"), exc)
                    failed.append(row)
                else:
                    succeeded.append(row)

            # Rows queued while the sync was running stay behind the failures.
            self.offline_queue = failed + self.offline_queue[len(queued):]
            if failed:
                logger.warning(
                    "[SYNC] %s synced, %s waiting for the next attempt.",
                    len(succeeded),
                    len(failed),
                )
            else:
                logger.info("[SYNC] %s transactions synced.", len(succeeded))
            return {"synced": len(succeeded), "pending": len(self.offline_queue)}

    def recent_transactions(self) -> list[dict[str, Any]]:
        return list(self.recent)

    async def run_retry_loop(self) -> None:
        while True:
            await asyncio.sleep(max(self.retry_delay, 0.1))
            if self.offline_queue:
                await self.sync()
