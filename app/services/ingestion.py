"""
Idempotent ingestion pipeline.

Each raw event moves through:

    Received -> Normalizing -> {Rejected | DuplicateCheck}
             -> {DuplicateFound | Writing} -> {Processed | RaceLost | Failed}

The processed record is written before its identity is registered. The two
writes are not atomic together; a caller that loses the registration race
deletes its own record and returns the winner as a duplicate.
"""
import time
import uuid
from datetime import datetime
from typing import Any, Callable, Iterable

import structlog

from .event_store import store
from ..errors import (
    InconsistentStateError,
    NormalizationError,
    PipelineError,
    RaceRepairFailure,
    StorageFault,
)
from ..event_models import (
    CanonicalEvent,
    CanonicalFields,
    EventFilter,
    EventStatus,
    IdentityRecord,
    IngestResult,
    utcnow,
)
from ..metrics import Metrics
from ..normalization.canonicalizer import normalize
from ..storage.base import IdentityStore, RecordStore

log = structlog.get_logger()

REJECTED_HASH_PREFIX = "rejected:"


def _outcome(result: IngestResult) -> str:
    if result.success:
        return "duplicate" if result.is_duplicate else "processed"
    if result.event is None:
        return "error"
    return result.event.status.value


class IngestionPipeline:
    """Orchestrates normalization, duplicate suppression and the two-phase write."""

    def __init__(
        self,
        records: RecordStore,
        identities: IdentityStore,
        metrics: Metrics | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the pipeline.

        Args:
            records: Store receiving canonical event records
            identities: Store arbitrating identity ownership
            metrics: Optional Prometheus metrics sink
            clock: Source of the ingestion time used for defaulted timestamps
        """
        self.records = records
        self.identities = identities
        self.metrics = metrics
        self.clock = clock

    async def ingest_one(self, raw: Any, simulate_failure: bool = False) -> IngestResult:
        """
        Ingest a single raw event.

        Args:
            raw: Decoded JSON value from a producer
            simulate_failure: Inject a storage failure after the duplicate check

        Returns:
            IngestResult describing the stored or matched event

        Raises:
            StorageFault: No record describing the failure could be stored
            InconsistentStateError: An identity points at a missing event
        """
        start = time.perf_counter()
        outcome = "error"
        try:
            result = await self._ingest(raw, simulate_failure)
            outcome = _outcome(result)
            return result
        finally:
            if self.metrics is not None:
                self.metrics.record_outcome(outcome, time.perf_counter() - start)

    async def ingest_batch(
        self, raws: Iterable[Any], simulate_failure: bool = False
    ) -> list[IngestResult]:
        """Ingest events sequentially; each item reports its own outcome."""
        results = []
        for index, raw in enumerate(raws):
            try:
                results.append(await self.ingest_one(raw, simulate_failure))
            except PipelineError as exc:
                log.error(
                    "event.pipeline_error",
                    index=index,
                    error=str(exc),
                    error_type=type(exc).__name__,
                    exc_info=True,
                )
                results.append(IngestResult(success=False, error=str(exc)))
        return results

    async def _ingest(self, raw: Any, simulate_failure: bool) -> IngestResult:
        try:
            fields = normalize(raw, now=self.clock())
        except NormalizationError as exc:
            return await self._reject(raw, exc)

        existing = await self.identities.lookup_identity(fields.identity_hash)
        if existing is not None:
            event = await self._owner_event(existing)
            if event is None:
                raise InconsistentStateError(
                    f"identity {fields.identity_hash} references missing event {existing.event_id}"
                )
            log.info("event.duplicate", id=event.id, identity_hash=fields.identity_hash)
            return IngestResult(success=True, event=event, is_duplicate=True)

        return await self._write(fields, raw, simulate_failure)

    async def _owner_event(self, identity: IdentityRecord) -> CanonicalEvent | None:
        return await self.records.get_event(identity.event_id)

    def _build_event(
        self, fields: CanonicalFields, raw: Any, status: EventStatus, **extra
    ) -> CanonicalEvent:
        return CanonicalEvent(
            client_id=fields.client_id,
            metric=fields.metric,
            amount=fields.amount,
            timestamp=fields.timestamp,
            identity_hash=fields.identity_hash,
            status=status,
            original_payload=raw,
            **extra,
        )

    async def _reject(self, raw: Any, exc: NormalizationError) -> IngestResult:
        now = self.clock()
        event = CanonicalEvent(
            client_id=exc.partial.get("client_id", "unknown"),
            metric=exc.partial.get("metric", "unknown"),
            amount=0.0,
            timestamp=now,
            # attempt-unique; never a valid sha256 hex digest
            identity_hash=f"{REJECTED_HASH_PREFIX}{uuid.uuid4().hex}",
            status=EventStatus.REJECTED,
            rejection_reason=exc.message,
            original_payload=raw,
        )
        try:
            await self.records.insert_event(event)
        except Exception as save_exc:
            log.error("event.rejected_record_lost", reason=exc.message, error=str(save_exc))
            raise StorageFault(f"failed to save rejected event: {save_exc}") from save_exc

        log.info("event.rejected", id=event.id, reason=exc.message, client_id=event.client_id)
        return IngestResult(success=False, event=event, error=exc.message)

    async def _write(
        self, fields: CanonicalFields, raw: Any, simulate_failure: bool
    ) -> IngestResult:
        retry_count = 0
        written: CanonicalEvent | None = None
        try:
            if simulate_failure:
                raise StorageFault("simulated storage failure")

            retry_count = await self.records.count_events(
                EventFilter(identity_hash=fields.identity_hash, status=EventStatus.FAILED)
            )
            event = self._build_event(
                fields, raw, EventStatus.PROCESSED, retry_count=retry_count
            )
            await self.records.insert_event(event)
            written = event

            registered = await self.identities.register_identity_if_absent(
                fields.identity_hash, fields.client_id, event.id
            )
        except Exception as exc:
            return await self._recover(fields, raw, exc, written, retry_count)

        if registered:
            log.info(
                "event.processed",
                id=event.id,
                client_id=event.client_id,
                metric=event.metric,
                amount=event.amount,
                identity_hash=event.identity_hash,
            )
            return IngestResult(success=True, event=event)

        return await self._resolve_lost_race(event)

    async def _resolve_lost_race(self, event: CanonicalEvent) -> IngestResult:
        log.warning("identity.race_lost", id=event.id, identity_hash=event.identity_hash)
        if self.metrics is not None:
            self.metrics.record_race_repair()

        await self.records.delete_event(event.id)

        owner = await self.identities.lookup_identity(event.identity_hash)
        if owner is None:
            raise RaceRepairFailure(
                f"identity {event.identity_hash} vanished after a lost registration race"
            )
        winner = await self._owner_event(owner)
        if winner is None:
            raise RaceRepairFailure(
                f"winning event {owner.event_id} for identity {event.identity_hash} not found"
            )
        return IngestResult(success=True, event=winner, is_duplicate=True)

    async def _recover(
        self,
        fields: CanonicalFields,
        raw: Any,
        exc: Exception,
        written: CanonicalEvent | None,
        retry_count: int,
    ) -> IngestResult:
        log.warning(
            "event.write_failed",
            identity_hash=fields.identity_hash,
            error=str(exc),
            error_type=type(exc).__name__,
        )

        # the write may have landed before the fault
        try:
            owner = await self.identities.lookup_identity(fields.identity_hash)
            existing = await self._owner_event(owner) if owner is not None else None
        except StorageFault as lookup_exc:
            log.warning("identity.recheck_failed", error=str(lookup_exc))
            existing = None

        if existing is not None and written is not None and existing.id == written.id:
            return IngestResult(success=True, event=existing)

        # our processed record is unregistered; it must not outlive the failure
        if written is not None:
            await self._remove_orphan(written)

        if existing is not None:
            log.info("event.duplicate", id=existing.id, identity_hash=fields.identity_hash)
            return IngestResult(success=True, event=existing, is_duplicate=True)

        failed = self._build_event(
            fields,
            raw,
            EventStatus.FAILED,
            rejection_reason=str(exc),
            retry_count=retry_count,
        )
        try:
            await self.records.insert_event(failed)
        except Exception as save_exc:
            log.error("event.failed_record_lost", error=str(exc), save_error=str(save_exc))
            raise StorageFault(f"failed to process event: {exc}") from save_exc

        log.info("event.failed", id=failed.id, identity_hash=fields.identity_hash, error=str(exc))
        return IngestResult(success=False, event=failed, error=str(exc))

    async def _remove_orphan(self, event: CanonicalEvent) -> None:
        try:
            await self.records.delete_event(event.id)
        except Exception as cleanup_exc:
            log.error("event.orphan_cleanup_failed", id=event.id, error=str(cleanup_exc))
            raise StorageFault(
                f"failed to remove unregistered event {event.id}: {cleanup_exc}"
            ) from cleanup_exc


# Global pipeline instance over the configured storage engine
pipeline = IngestionPipeline(records=store, identities=store)


def set_metrics(metrics: Metrics):
    """Attach Prometheus metrics to the global pipeline."""
    pipeline.metrics = metrics
