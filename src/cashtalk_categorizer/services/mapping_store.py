import asyncio
from collections import defaultdict
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from cashtalk_categorizer.core import settings
from cashtalk_categorizer.integration.persistence import (
    DIRECT_MAPPINGS_TABLE,
    GLOBAL_MAPPINGS_TABLE,
    USER_MAPPINGS_TABLE,
    PersistenceBackend,
    PersistenceError,
)
from cashtalk_categorizer.logger import get_logger
from cashtalk_categorizer.models import DEFAULT_CATEGORY, MappingSnapshot, SuggestedCategory

logger = get_logger(__name__)

T = TypeVar("T")

USER_TIER_WEIGHT = 3.0
GLOBAL_TIER_WEIGHT = 1.0
DEFAULT_SUGGESTION_CONFIDENCE = 0.1


def _clean_keywords(keywords: list[str]) -> list[str]:
    seen: list[str] = []
    for keyword in keywords:
        cleaned = keyword.strip().lower()
        if cleaned and cleaned not in seen:
            seen.append(cleaned)
    return seen


def _as_counts(raw: Any) -> dict[str, float]:
    if not isinstance(raw, dict):
        return {}
    counts: dict[str, float] = {}
    for category, value in raw.items():
        try:
            counts[str(category)] = float(value)
        except (TypeError, ValueError):
            continue
    return counts


class MappingStore:
    """
    Three-tier keyword mappings: direct (per user, last write wins), user
    probabilistic counts and global probabilistic counts.

    Reads are cached per user until a successful feedback write invalidates
    them. Every backend call gets one retry after ``retry_delay`` seconds;
    reads degrade to empty mappings and writes report ``False`` when the
    retry fails as well.
    """

    def __init__(
        self,
        backend: PersistenceBackend,
        retry_delay: float | None = None,
    ) -> None:
        self.backend = backend
        self.retry_delay = settings.retry_delay_seconds() if retry_delay is None else retry_delay
        self._direct_cache: dict[str, dict[str, str]] = {}
        self._user_cache: dict[str, dict[str, dict[str, float]]] = {}
        self._global_cache: dict[str, dict[str, float]] | None = None

    async def _with_retry(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        try:
            return await call()
        except PersistenceError as exc:
            logger.warning(
                "[MAPPINGS] %s failed: %s. Retrying in %.1fs.",
                operation,
                exc,
                self.retry_delay,
            )
        await asyncio.sleep(self.retry_delay)
        return await call()

    def invalidate(self, user_id: str | None = None) -> None:
        if user_id is None:
            self._direct_cache.clear()
            self._user_cache.clear()
        else:
            self._direct_cache.pop(user_id, None)
            self._user_cache.pop(user_id, None)
        self._global_cache = None

    async def get_direct_mappings(self, user_id: str | None) -> dict[str, str]:
        if not user_id:
            return {}
        cached = self._direct_cache.get(user_id)
        if cached is not None:
            return cached
        try:
            rows = await self._with_retry(
                "Fetching direct mappings",
                lambda: self.backend.select(DIRECT_MAPPINGS_TABLE, {"user_id": user_id}),
            )
        except PersistenceError as exc:
            logger.error("[MAPPINGS] Error fetching direct mappings for %s: %s", user_id, exc)
            return {}
        mappings = {
            str(row["keyword"]): str(row["category"])
            for row in rows
            if row.get("keyword") and row.get("category")
        }
        self._direct_cache[user_id] = mappings
        logger.debug("[MAPPINGS] Loaded %s direct mappings for %s", len(mappings), user_id)
        return mappings

    async def get_user_mappings(self, user_id: str | None) -> dict[str, dict[str, float]]:
        if not user_id:
            return {}
        cached = self._user_cache.get(user_id)
        if cached is not None:
            return cached
        try:
            rows = await self._with_retry(
                "Fetching user mappings",
                lambda: self.backend.select(USER_MAPPINGS_TABLE, {"user_id": user_id}),
            )
        except PersistenceError as exc:
            logger.error("[MAPPINGS] Error fetching user mappings for %s: %s", user_id, exc)
            return {}
        mappings = {
            str(row["keyword"]): _as_counts(row.get("categories"))
            for row in rows
            if row.get("keyword")
        }
        self._user_cache[user_id] = mappings
        return mappings

    async def get_global_mappings(self) -> dict[str, dict[str, float]]:
        if self._global_cache is not None:
            return self._global_cache
        try:
            rows = await self._with_retry(
                "Fetching global mappings",
                lambda: self.backend.select(GLOBAL_MAPPINGS_TABLE),
            )
        except PersistenceError as exc:
            logger.error("[MAPPINGS] Error fetching global mappings: %s", exc)
            return {}
        mappings = {
            str(row["keyword"]): _as_counts(row.get("categories"))
            for row in rows
            if row.get("keyword")
        }
        self._global_cache = mappings
        return mappings

    async def snapshot(self, user_id: str | None = None) -> MappingSnapshot:
        return MappingSnapshot(
            direct=await self.get_direct_mappings(user_id),
            user=await self.get_user_mappings(user_id),
            shared=await self.get_global_mappings(),
        )

    async def feedback_count(self, user_id: str | None) -> int:
        """Number of keyword-level corrections recorded for the user."""
        mappings = await self.get_user_mappings(user_id)
        return int(sum(sum(counts.values()) for counts in mappings.values()))

    async def get_suggested_category(
        self,
        keywords: list[str],
        user_id: str | None = None,
    ) -> SuggestedCategory:
        keywords = _clean_keywords(keywords)
        if not keywords:
            return SuggestedCategory(
                category=DEFAULT_CATEGORY,
                confidence=DEFAULT_SUGGESTION_CONFIDENCE,
                source="default",
            )

        direct = await self.get_direct_mappings(user_id)
        for keyword in keywords:
            if keyword in direct:
                logger.debug("[MAPPINGS] Direct mapping for '%s': %s", keyword, direct[keyword])
                return SuggestedCategory(category=direct[keyword], confidence=1.0, source="direct_mapping")

        user_mappings = await self.get_user_mappings(user_id)
        global_mappings = await self.get_global_mappings()
        scores: dict[str, float] = defaultdict(float)
        for keyword in keywords:
            for category, count in user_mappings.get(keyword, {}).items():
                scores[category] += count * USER_TIER_WEIGHT
            for category, count in global_mappings.get(keyword, {}).items():
                scores[category] += count * GLOBAL_TIER_WEIGHT

        total = sum(scores.values())
        if total <= 0:
            return SuggestedCategory(
                category=DEFAULT_CATEGORY,
                confidence=DEFAULT_SUGGESTION_CONFIDENCE,
                source="default",
            )
        best = max(scores, key=lambda category: scores[category])
        return SuggestedCategory(category=best, confidence=scores[best] / total)

    async def _verify_direct(self, keyword: str, category: str, user_id: str) -> bool:
        rows = await self._with_retry(
            "Verifying direct mapping",
            lambda: self.backend.select(DIRECT_MAPPINGS_TABLE, {"user_id": user_id, "keyword": keyword}),
        )
        return any(row.get("category") == category for row in rows)

    async def _force_save_direct(self, keywords: list[str], category: str, user_id: str) -> None:
        for keyword in keywords:
            await self._with_retry(
                "Deleting direct mapping",
                lambda keyword=keyword: self.backend.delete(
                    DIRECT_MAPPINGS_TABLE, {"user_id": user_id, "keyword": keyword}
                ),
            )
            await self._with_retry(
                "Inserting direct mapping",
                lambda keyword=keyword: self.backend.insert(
                    DIRECT_MAPPINGS_TABLE,
                    [{"user_id": user_id, "keyword": keyword, "category": category, "force_flag": True}],
                ),
            )

    async def update_direct_mappings(
        self,
        keywords: list[str],
        category: str,
        user_id: str | None,
    ) -> bool:
        keywords = _clean_keywords(keywords)
        if not keywords or not category or not user_id:
            logger.warning("[MAPPINGS] Rejected direct mapping update: missing keywords, category or user.")
            return False

        try:
            for keyword in keywords:
                await self._with_retry(
                    "Upserting direct mapping",
                    lambda keyword=keyword: self.backend.upsert(
                        DIRECT_MAPPINGS_TABLE,
                        [{"user_id": user_id, "keyword": keyword, "category": category, "force_flag": False}],
                    ),
                )

            if not await self._verify_direct(keywords[0], category, user_id):
                logger.warning(
                    "[MAPPINGS] Direct mapping for '%s' not persisted. Forcing overwrite.",
                    keywords[0],
                )
                await self._force_save_direct(keywords, category, user_id)
                if not await self._verify_direct(keywords[0], category, user_id):
                    logger.error("[MAPPINGS] Forced overwrite for '%s' did not persist.", keywords[0])
                    return False
        except PersistenceError as exc:
            logger.error("[MAPPINGS] Error updating direct mappings: %s", exc)
            return False

        self._direct_cache.pop(user_id, None)
        logger.info("[MAPPINGS] Direct mappings %s -> %s saved for %s", keywords, category, user_id)
        return True

    async def _increment(self, table: str, filters: dict[str, str], category: str) -> None:
        rows = await self._with_retry(
            f"Reading {table}",
            lambda: self.backend.select(table, filters),
        )
        counts = _as_counts(rows[0].get("categories")) if rows else {}
        counts[category] = counts.get(category, 0.0) + 1
        row: dict[str, Any] = {**filters, "categories": counts}
        if table == GLOBAL_MAPPINGS_TABLE:
            row["count"] = int(rows[0].get("count", 0)) + 1 if rows else 1
        await self._with_retry(
            f"Writing {table}",
            lambda: self.backend.upsert(table, [row]),
        )

    async def update_mappings(
        self,
        keywords: list[str],
        category: str,
        user_id: str | None,
    ) -> bool:
        """
        Record one correction: the direct tier first, then the user and
        global counts, one keyword at a time.
        """
        keywords = _clean_keywords(keywords)
        if not keywords or not category or not user_id:
            logger.warning("[MAPPINGS] Rejected feedback: missing keywords, category or user.")
            return False

        direct_saved = await self.update_direct_mappings(keywords, category, user_id)

        try:
            for keyword in keywords:
                await self._increment(USER_MAPPINGS_TABLE, {"user_id": user_id, "keyword": keyword}, category)
                await self._increment(GLOBAL_MAPPINGS_TABLE, {"keyword": keyword}, category)
        except PersistenceError as exc:
            logger.error("[MAPPINGS] Error updating probabilistic mappings: %s", exc)
            return False

        self.invalidate(user_id)
        return direct_saved
