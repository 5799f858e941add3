from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import timedelta
from uuid import uuid4

from packages.shared.schemas.command_v1 import (
    CommandTypeV1,
    ItemStateV1,
    LogStatusV1,
    RequestStateV1,
    SendOutcomeV1,
)
from services.ami.app.db.database import is_postgres
from services.ami.app.db.models import CommandItem, CommandRequest, utcnow
from services.ami.app.services.errors import CommandServiceError
from services.ami.app.services.meter_channel_base import (
    MeterChannel,
    MeterChannelError,
    SendResult,
)
from services.ami.app.services.meter_registry import DbMeterRegistry
from services.ami.app.services.recorder import apply_transition, record
from services.ami.app.services.settings import DispatchSettings
from sqlalchemy import select, update
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ClaimedItem:
    item_id: int
    request_id: str
    meter_serial_no: str
    command_type: CommandTypeV1
    idempotency_key: str
    attempts: int


@dataclass(slots=True)
class DispatchSummary:
    claimed: int = 0
    acked: int = 0
    retried: int = 0
    dead_lettered: int = 0
    failed: int = 0
    skipped: int = 0
    item_ids: list[int] = field(default_factory=list)


class Dispatcher:
    """Drains Approved command items and delivers them through a meter channel.

    Several dispatchers may run against the same database. Claiming is exclusive per
    item: the Approved -> Dispatched update only succeeds for one claimant.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        channel: MeterChannel,
        settings: DispatchSettings | None = None,
        *,
        worker_id: str | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._channel = channel
        self._settings = settings or DispatchSettings.from_env()
        self.worker_id = worker_id or f"dispatcher-{uuid4().hex[:8]}"
        self._executor = ThreadPoolExecutor(
            max_workers=self._settings.batch_size, thread_name_prefix=self.worker_id
        )
        # Sends still running on the pool, including ones abandoned after a timeout.
        self._in_flight = 0
        self._in_flight_lock = threading.Lock()

    @property
    def settings(self) -> DispatchSettings:
        return self._settings

    @property
    def free_send_slots(self) -> int:
        with self._in_flight_lock:
            return self._settings.batch_size - self._in_flight

    def _release_send_slot(self, _future: Future) -> None:
        with self._in_flight_lock:
            self._in_flight -= 1

    def close(self) -> None:
        # Do not wait on sends that already timed out; they are abandoned.
        self._executor.shutdown(wait=False, cancel_futures=True)

    def __enter__(self) -> "Dispatcher":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def claim_next(self, batch_size: int | None = None) -> list[ClaimedItem]:
        """Move up to `batch_size` Approved items to Dispatched and return them.

        Never claims more items than there are idle send threads, so a claimed item is
        always actually handed to the channel.
        """

        limit = min(batch_size or self._settings.batch_size, self.free_send_slots)
        if limit <= 0:
            logger.warning(
                "command.dispatch.saturated worker=%s send_threads=%s",
                self.worker_id,
                self._settings.batch_size,
            )
            return []

        db = self._session_factory()
        try:
            stmt = (
                select(CommandItem.id)
                .where(CommandItem.state == ItemStateV1.APPROVED)
                .order_by(CommandItem.id.asc())
                .limit(limit)
            )
            if is_postgres(db):
                stmt = stmt.with_for_update(skip_locked=True)

            candidate_ids = list(db.scalars(stmt))

            claimed_ids: list[int] = []
            for item_id in candidate_ids:
                try:
                    apply_transition(
                        db,
                        item_id,
                        LogStatusV1.DISPATCHED,
                        f"Claimed by {self.worker_id}",
                        increment_attempts=True,
                        claimed_by=self.worker_id,
                    )
                except CommandServiceError:
                    # Another worker claimed it between our scan and the update.
                    continue
                claimed_ids.append(item_id)

            if not claimed_ids:
                db.rollback()
                return []

            rows = db.execute(
                select(CommandItem, CommandRequest.type)
                .join(CommandRequest, CommandRequest.id == CommandItem.request_id)
                .where(CommandItem.id.in_(claimed_ids))
                .order_by(CommandItem.id.asc())
            ).all()

            claimed = [
                ClaimedItem(
                    item_id=item.id,
                    request_id=item.request_id,
                    meter_serial_no=item.meter_serial_no,
                    command_type=command_type,
                    idempotency_key=item.idempotency_key,
                    attempts=item.attempts,
                )
                for item, command_type in rows
            ]

            _mark_requests_dispatched(db, {c.request_id for c in claimed})
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        logger.info(
            "command.dispatch.claimed worker=%s items=%s",
            self.worker_id,
            [c.item_id for c in claimed],
        )
        return claimed

    def send(self, item: ClaimedItem) -> SendResult:
        """Call the meter channel, bounded by the configured send timeout."""

        timeout = self._settings.send_timeout_seconds
        with self._in_flight_lock:
            self._in_flight += 1
        future = self._executor.submit(
            self._channel.send,
            item.meter_serial_no,
            item.command_type,
            idempotency_key=item.idempotency_key,
        )
        future.add_done_callback(self._release_send_slot)
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError:
            future.cancel()
            return SendResult(SendOutcomeV1.TIMEOUT, f"No response within {timeout:g}s")
        except MeterChannelError as e:
            return SendResult(SendOutcomeV1.NACK, str(e))
        except Exception as e:
            logger.exception(
                "command.dispatch.channel_error item_id=%s channel=%s",
                item.item_id,
                getattr(self._channel, "name", "?"),
            )
            return SendResult(SendOutcomeV1.NACK, f"Channel error: {e}")

    def dispatch(self, item: ClaimedItem) -> LogStatusV1:
        """Deliver one claimed item and record the outcome. Returns the logged status."""

        db = self._session_factory()
        try:
            if not DbMeterRegistry(db).is_active(item.meter_serial_no):
                message = f"Meter {item.meter_serial_no} is not active"
                record(db, item.item_id, LogStatusV1.FAILED, message, last_error=message)
                logger.warning(
                    "command.item.failed item_id=%s meter=%s reason=meter_inactive",
                    item.item_id,
                    item.meter_serial_no,
                )
                return LogStatusV1.FAILED

            result = self.send(item)

            if result.acked:
                record(db, item.item_id, LogStatusV1.ACKED, result.message or "Acked")
                return LogStatusV1.ACKED

            return self._record_failure(db, item.item_id, item.attempts, result)
        finally:
            db.close()

    def _record_failure(
        self, db: Session, item_id: int, attempts: int, result: SendResult
    ) -> LogStatusV1:
        message = result.outcome.value
        if result.message:
            message = f"{message}: {result.message}"
        detail = f"{message} (attempt {attempts}/{self._settings.max_attempts})"

        if attempts >= self._settings.max_attempts:
            record(db, item_id, LogStatusV1.MOVED_TO_DLQ, detail, last_error=message)
            logger.warning(
                "command.item.dead_lettered item_id=%s attempts=%s error=%s",
                item_id,
                attempts,
                message,
            )
            return LogStatusV1.MOVED_TO_DLQ

        record(db, item_id, LogStatusV1.RETRIED, detail, last_error=message)
        logger.info(
            "command.item.retry_scheduled item_id=%s attempts=%s error=%s",
            item_id,
            attempts,
            message,
        )
        return LogStatusV1.RETRIED

    def recover_stale_claims(self) -> int:
        """Treat items held Dispatched past the claim TTL (a crashed worker) as Timeouts."""

        cutoff = utcnow() - timedelta(seconds=self._settings.claim_ttl_seconds)

        db = self._session_factory()
        try:
            stale = list(
                db.scalars(
                    select(CommandItem)
                    .where(
                        CommandItem.state == ItemStateV1.DISPATCHED,
                        CommandItem.claimed_at.is_not(None),
                        CommandItem.claimed_at < cutoff,
                    )
                    .order_by(CommandItem.id.asc())
                )
            )

            expired = [(item.id, item.attempts, item.claimed_by) for item in stale]

            recovered = 0
            for item_id, attempts, claimed_by in expired:
                timeout = SendResult(SendOutcomeV1.TIMEOUT, f"Claim by {claimed_by} expired")
                try:
                    self._record_failure(db, item_id, attempts, timeout)
                except CommandServiceError as e:
                    logger.warning(
                        "command.dispatch.recover_skipped item_id=%s error=%s", item_id, e
                    )
                    continue
                recovered += 1
        finally:
            db.close()

        if recovered:
            logger.warning("command.dispatch.recovered_stale_claims count=%s", recovered)
        return recovered

    def run_once(self, batch_size: int | None = None) -> DispatchSummary:
        summary = DispatchSummary()

        for item in self.claim_next(batch_size):
            summary.claimed += 1
            summary.item_ids.append(item.item_id)
            try:
                status = self.dispatch(item)
            except CommandServiceError as e:
                # The item moved underneath us (e.g. stale-claim recovery); keep draining.
                logger.warning(
                    "command.dispatch.record_skipped item_id=%s error=%s", item.item_id, e
                )
                summary.skipped += 1
                continue
            except Exception:
                # Left Dispatched; recover_stale_claims picks it up after the claim TTL.
                logger.exception("command.dispatch.item_error item_id=%s", item.item_id)
                summary.skipped += 1
                continue

            if status == LogStatusV1.ACKED:
                summary.acked += 1
            elif status == LogStatusV1.RETRIED:
                summary.retried += 1
            elif status == LogStatusV1.MOVED_TO_DLQ:
                summary.dead_lettered += 1
            else:
                summary.failed += 1

        return summary

    def run_forever(self, stop_event: threading.Event) -> None:
        logger.info(
            "command.dispatch.worker_started worker=%s channel=%s max_attempts=%s",
            self.worker_id,
            getattr(self._channel, "name", "?"),
            self._settings.max_attempts,
        )
        while not stop_event.is_set():
            try:
                self.recover_stale_claims()
                summary = self.run_once()
            except Exception:
                logger.exception("command.dispatch.pass_failed worker=%s", self.worker_id)
                stop_event.wait(self._settings.poll_interval_seconds)
                continue

            if summary.claimed == 0:
                stop_event.wait(self._settings.poll_interval_seconds)

        logger.info("command.dispatch.worker_stopped worker=%s", self.worker_id)


def _mark_requests_dispatched(db: Session, request_ids: set[str]) -> None:
    if not request_ids:
        return

    still_pending = (
        select(CommandItem.id)
        .where(
            CommandItem.request_id == CommandRequest.id,
            CommandItem.state == ItemStateV1.PENDING_APPROVAL,
        )
        .correlate(CommandRequest)
        .exists()
    )
    db.execute(
        update(CommandRequest)
        .where(
            CommandRequest.id.in_(request_ids),
            CommandRequest.state == RequestStateV1.APPROVED,
            ~still_pending,
        )
        .values(state=RequestStateV1.DISPATCHED)
        .execution_options(synchronize_session=False)
    )
