"""
Offline Queue

Durable FIFO of submissions that could not be analysed immediately (no
connectivity, or deferred while the AI service is down), plus cached
home-care content for use when the pipeline cannot be reached at all.

Store layout (KeyOrderedStore keys):
  meta/sequence          last issued sequence number
  queue/<seq:012d>       pending QueuedRequest
  failed/<seq:012d>      QueuedRequest that exhausted its retry budget
  result/<idem_key>      accepted result for an idempotency key
  cache/<animal_type>    CachedContent
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel

from pashucare.config import settings
from pashucare.core.errors import InputValidationError
from pashucare.core.knowledge_base import KnowledgeBaseSnapshot
from pashucare.memory.store import KeyOrderedStore
from pashucare.models.schemas import (
    AnimalType,
    CachedContent,
    CachedGuidance,
    LocationInput,
    QueuedRequest,
    SymptomInput,
    SyncReport,
)

logger = logging.getLogger(__name__)

SEQUENCE_KEY = "meta/sequence"
QUEUE_PREFIX = "queue/"
FAILED_PREFIX = "failed/"
RESULT_PREFIX = "result/"
CACHE_PREFIX = "cache/"

GENERAL_ADVICE: list[str] = [
    "Separate the sick animal from the rest of the herd.",
    "Provide clean drinking water, shade and easily digestible feed.",
    "Do not give leftover human medicines or antibiotics without veterinary advice.",
    "If the animal cannot stand, stops drinking, or has difficulty breathing, "
    "contact a veterinarian immediately.",
]

SyncFn = Callable[[QueuedRequest], Awaitable[Any]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OfflineQueue:
    """FIFO buffer of deferred submissions over a KeyOrderedStore.

    Args:
        store: Persistence backend.
        max_attempts: Failed drain attempts before an entry is marked failed.
        retention_hours: Entries older than this are dropped, not retried.
        clock: Returns the current aware datetime; injectable for tests.
    """

    def __init__(
        self,
        store: KeyOrderedStore,
        max_attempts: Optional[int] = None,
        retention_hours: Optional[float] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.max_attempts = max_attempts if max_attempts is not None else settings.QUEUE_MAX_ATTEMPTS
        self.retention = timedelta(
            hours=retention_hours if retention_hours is not None else settings.QUEUE_RETENTION_HOURS
        )
        self._clock = clock
        self._lock = threading.Lock()
        self._draining = False

    # -- enqueue / inspect --------------------------------------------------

    def enqueue(
        self,
        symptom_input: SymptomInput,
        location: Optional[LocationInput] = None,
        reason: str = "offline",
    ) -> QueuedRequest:
        """Append a submission; a key that is already pending is not duplicated.

        ``reason`` records why the request was deferred ("offline" or
        "circuit_open").  Entries past the retention horizon are purged
        first.
        """
        self.purge_expired()
        with self._lock:
            existing = self._find_pending(symptom_input.idempotency_key)
            if existing is not None:
                logger.info(
                    "offline_queue: duplicate enqueue key=%s sequence=%d",
                    symptom_input.idempotency_key, existing.sequence,
                )
                return existing

            meta = self.store.get(SEQUENCE_KEY) or {"value": 0}
            sequence = int(meta["value"]) + 1
            self.store.put(SEQUENCE_KEY, {"value": sequence})

            entry = QueuedRequest(
                sequence=sequence,
                enqueued_at=self._clock(),
                input=symptom_input,
                location=location,
                reason=reason,
            )
            self._save(QUEUE_PREFIX, entry)

        logger.info("offline_queue: enqueued key=%s sequence=%d", symptom_input.idempotency_key, sequence)
        return entry

    def pending(self) -> list[QueuedRequest]:
        return [QueuedRequest.model_validate(v) for _, v in self.store.items(QUEUE_PREFIX)]

    def failed(self) -> list[QueuedRequest]:
        return [QueuedRequest.model_validate(v) for _, v in self.store.items(FAILED_PREFIX)]

    def find_failed(self, idempotency_key: str) -> Optional[QueuedRequest]:
        for entry in self.failed():
            if entry.input.idempotency_key == idempotency_key:
                return entry
        return None

    def dismiss_failed(self, idempotency_key: str) -> bool:
        """Forget a failed entry so the user can resubmit the same key."""
        entry = self.find_failed(idempotency_key)
        if entry is None:
            return False
        self.store.delete(self._key(FAILED_PREFIX, entry.sequence))
        return True

    def accepted_result(self, idempotency_key: str) -> Optional[dict[str, Any]]:
        return self.store.get(RESULT_PREFIX + idempotency_key)

    def record_result(self, idempotency_key: str, result: BaseModel | dict[str, Any]) -> None:
        payload = result.model_dump(mode="json") if isinstance(result, BaseModel) else result
        self.store.put(RESULT_PREFIX + idempotency_key, payload)

    @property
    def is_draining(self) -> bool:
        return self._draining

    # -- drain --------------------------------------------------------------

    async def drain(self, sync_fn: SyncFn) -> SyncReport:
        """Replay pending entries in sequence order through ``sync_fn``.

        Single-flight: a call made while another drain is running returns
        immediately with ``skipped=True``.  Entries enqueued during the pass
        are picked up before it finishes.  The accepted result is stored
        under the idempotency key before the entry is removed, so a drain
        retried after a crash never produces a second result.
        """
        if self._draining:
            logger.info("offline_queue: drain already in flight, skipping")
            return SyncReport(skipped=True)
        self._draining = True
        try:
            return await self._drain_pass(sync_fn)
        finally:
            self._draining = False

    async def _drain_pass(self, sync_fn: SyncFn) -> SyncReport:
        report = SyncReport()
        seen: set[int] = set()

        while True:
            batch = [e for e in self.pending() if e.sequence not in seen]
            if not batch:
                break
            for entry in batch:
                seen.add(entry.sequence)
                key = self._key(QUEUE_PREFIX, entry.sequence)
                idem = entry.input.idempotency_key

                if self._is_expired(entry):
                    self.store.delete(key)
                    report.expired += 1
                    logger.info("offline_queue: dropped expired key=%s sequence=%d", idem, entry.sequence)
                    continue

                if self.accepted_result(idem) is not None:
                    self.store.delete(key)
                    report.duplicates += 1
                    continue

                report.attempted += 1
                try:
                    result = await sync_fn(entry)
                except InputValidationError as exc:
                    entry.attempts += 1
                    entry.last_error = exc.message
                    self._mark_failed(entry)
                    report.failed.append(entry)
                    continue
                except Exception as exc:
                    entry.attempts += 1
                    entry.last_error = getattr(exc, "message", type(exc).__name__)
                    if entry.attempts >= self.max_attempts:
                        self._mark_failed(entry)
                        report.failed.append(entry)
                    else:
                        self._save(QUEUE_PREFIX, entry)
                        report.requeued += 1
                        logger.warning(
                            "offline_queue: sync failed key=%s attempt=%d/%d error=%s",
                            idem, entry.attempts, self.max_attempts, entry.last_error,
                        )
                    continue

                if self.accepted_result(idem) is not None:
                    # Answered by a direct resubmission while this sync ran
                    self.store.delete(key)
                    report.duplicates += 1
                    logger.info("offline_queue: result already accepted key=%s, drained result dropped", idem)
                    continue

                self.record_result(idem, result)
                self.store.delete(key)
                report.succeeded += 1

        logger.info(
            "offline_queue: drain attempted=%d succeeded=%d requeued=%d failed=%d expired=%d duplicates=%d",
            report.attempted, report.succeeded, report.requeued, len(report.failed),
            report.expired, report.duplicates,
        )
        return report

    def purge_expired(self) -> int:
        """Drop pending entries past the retention horizon."""
        removed = 0
        for entry in self.pending():
            if self._is_expired(entry):
                self.store.delete(self._key(QUEUE_PREFIX, entry.sequence))
                removed += 1
        if removed:
            logger.info("offline_queue: purged %d expired entries", removed)
        return removed

    # -- cached fallback content --------------------------------------------

    def refresh_cache(self, snapshot: KnowledgeBaseSnapshot) -> None:
        """Store home-care content for common conditions, per animal type."""
        for animal in AnimalType:
            guidance = []
            for disease in snapshot.diseases_for(animal):
                if not disease.common:
                    continue
                steps = [
                    step
                    for treatment in snapshot.treatments_for(disease.condition_id, "home_care", animal)
                    for step in treatment.steps
                ]
                if steps:
                    guidance.append(CachedGuidance(
                        condition_id=disease.condition_id,
                        name=disease.name,
                        home_care=steps,
                    ))
            content = CachedContent(
                animal_type=animal,
                guidance=guidance,
                general_advice=GENERAL_ADVICE,
                knowledge_base_version=snapshot.version,
            )
            self.store.put(CACHE_PREFIX + animal.value, content.model_dump(mode="json"))
        logger.info("offline_queue: cached fallback content refreshed version=%s", snapshot.version)

    def cached_fallback(self, animal_type: AnimalType) -> CachedContent:
        raw = self.store.get(CACHE_PREFIX + animal_type.value)
        if raw is None:
            return CachedContent(animal_type=animal_type, general_advice=GENERAL_ADVICE)
        return CachedContent.model_validate(raw)

    # -- internals ------------------------------------------------------------

    @staticmethod
    def _key(prefix: str, sequence: int) -> str:
        return f"{prefix}{sequence:012d}"

    def _save(self, prefix: str, entry: QueuedRequest) -> None:
        self.store.put(self._key(prefix, entry.sequence), entry.model_dump(mode="json"))

    def _mark_failed(self, entry: QueuedRequest) -> None:
        entry.status = "failed"
        self._save(FAILED_PREFIX, entry)
        self.store.delete(self._key(QUEUE_PREFIX, entry.sequence))
        logger.warning(
            "offline_queue: giving up key=%s sequence=%d attempts=%d error=%s",
            entry.input.idempotency_key, entry.sequence, entry.attempts, entry.last_error,
        )

    def _find_pending(self, idempotency_key: str) -> Optional[QueuedRequest]:
        for entry in self.pending():
            if entry.input.idempotency_key == idempotency_key:
                return entry
        return None

    def _is_expired(self, entry: QueuedRequest) -> bool:
        enqueued = entry.enqueued_at
        if enqueued.tzinfo is None:
            enqueued = enqueued.replace(tzinfo=timezone.utc)
        return self._clock() - enqueued > self.retention
