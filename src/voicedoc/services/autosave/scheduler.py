from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from src.voicedoc.config import settings
from src.voicedoc.domain.models.documentation_session import DocumentationSession
from src.voicedoc.domain.models.jobs import AutoSaveStatus, SaveTicket

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]
Persist = Callable[[DocumentationSession], Awaitable[DocumentationSession]]
SnapshotProvider = Callable[[], DocumentationSession]


class AutoSaveScheduler:
    """Debounced, single-flight auto-save for one session.

    Every qualifying edit restarts the debounce timer. When the timer expires
    a SaveTicket is issued with the snapshot of that moment. At most one save
    runs at a time; expiries that happen meanwhile collapse into a single
    pending save which fires, with the latest snapshot, as soon as the running
    one resolves.

    The confirmed marker only moves forward: a ticket that completes after a
    higher-numbered ticket was confirmed is ignored. Failures are logged and
    recorded, never retried; the next edit schedules a fresh attempt.
    """

    def __init__(
        self,
        persist: Persist,
        snapshot_provider: SnapshotProvider,
        *,
        debounce_seconds: Optional[float] = None,
        sleep: Optional[Sleep] = None,
        enabled: Optional[bool] = None,
    ) -> None:
        self._persist = persist
        self._snapshot_provider = snapshot_provider
        self._debounce = debounce_seconds if debounce_seconds is not None else settings.autosave_debounce_seconds
        self._sleep: Sleep = sleep or asyncio.sleep
        self._enabled = settings.autosave_enabled if enabled is None else enabled

        self._sequence = 0
        self._confirmed_sequence = 0
        self._timer: Optional[asyncio.Task] = None
        self._in_flight: Optional[asyncio.Task] = None
        self._pending = False
        self._closed = False

        self.save_count = 0
        self.last_confirmed_at: Optional[datetime] = None
        self.last_failure: Optional[BaseException] = None

    @property
    def enabled(self) -> bool:
        return self._enabled and not self._closed

    @property
    def issued_sequence(self) -> int:
        return self._sequence

    @property
    def confirmed_sequence(self) -> int:
        return self._confirmed_sequence

    @property
    def timer_active(self) -> bool:
        return self._timer is not None

    @property
    def in_flight(self) -> bool:
        return self._in_flight is not None

    @property
    def pending(self) -> bool:
        return self._pending

    def set_enabled(self, enabled: bool) -> None:
        self._enabled = enabled
        if not enabled:
            self._cancel_timer()
            self._pending = False

    def notify_mutation(self) -> None:
        """Restart the debounce window after a qualifying edit."""

        if not self.enabled:
            return
        self._cancel_timer()
        self._timer = asyncio.create_task(self._run_timer())

    def issue_ticket(self, snapshot: Optional[DocumentationSession] = None) -> SaveTicket:
        """Reserve the next sequence number.

        Explicit saves draw from the same counter so a slow auto-save can never
        move the confirmed marker past them.
        """

        self._sequence += 1
        if snapshot is None:
            snapshot = self._snapshot_provider()
        return SaveTicket(sequence=self._sequence, snapshot=snapshot)

    def confirm(self, ticket: SaveTicket) -> bool:
        if ticket.sequence <= self._confirmed_sequence:
            logger.info(
                "Ignoring stale save #%s (confirmed #%s)",
                ticket.sequence,
                self._confirmed_sequence,
            )
            return False
        self._confirmed_sequence = ticket.sequence
        self.last_confirmed_at = datetime.now(timezone.utc)
        self.last_failure = None
        return True

    async def quiesce(self) -> None:
        """Drop any scheduled save and wait for the running one to resolve."""

        self._cancel_timer()
        self._pending = False
        task = self._in_flight
        if task is not None:
            await asyncio.shield(task)

    async def close(self) -> None:
        self._closed = True
        await self.quiesce()

    def status(self) -> AutoSaveStatus:
        return AutoSaveStatus(
            enabled=self.enabled,
            issued_sequence=self._sequence,
            confirmed_sequence=self._confirmed_sequence,
            in_flight=self.in_flight,
            pending=self._pending,
            last_confirmed_at=self.last_confirmed_at,
            last_failure=str(self.last_failure) if self.last_failure is not None else None,
        )

    # Internals

    def _cancel_timer(self) -> None:
        timer, self._timer = self._timer, None
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()

    async def _run_timer(self) -> None:
        await self._sleep(self._debounce)
        if self._timer is asyncio.current_task():
            self._timer = None
        if not self.enabled:
            return
        if self._in_flight is not None:
            self._pending = True
            return
        self._launch()

    def _launch(self) -> None:
        ticket = self.issue_ticket()
        self._in_flight = asyncio.create_task(self._run_save(ticket))

    async def _run_save(self, ticket: SaveTicket) -> None:
        self.save_count += 1
        try:
            await self._persist(ticket.snapshot)
        except Exception as exc:
            self.last_failure = exc
            logger.warning("Auto-save #%s failed: %s", ticket.sequence, exc)
        else:
            if self.confirm(ticket):
                logger.info("Auto-save #%s confirmed", ticket.sequence)
        finally:
            self._in_flight = None
            if self._pending and self.enabled:
                self._pending = False
                self._launch()
