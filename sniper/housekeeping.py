"""Periodic cleanup of idle tickets, expired wagers and cooldowns."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

from .config import Settings
from .errors import InvalidStateTransition, LockTimeout, PersistenceError
from .idempotency import IdempotencyStore
from .locks import ChannelLocks
from .notifier import Notifier
from .state import Ticket, TicketState
from .tickets import TicketManager

log = logging.getLogger(__name__)

# nothing has been paid yet; safe to cancel
PRE_PAYMENT_STATES = frozenset(
    {TicketState.AWAITING_TICKET, TicketState.AWAITING_MIDDLEMAN, TicketState.AWAITING_PAYMENT_ADDRESS}
)
# our stake is out; only a person may close these
IN_FLIGHT_STATES = frozenset(
    {
        TicketState.PAYMENT_SENT,
        TicketState.AWAITING_GAME_START,
        TicketState.GAME_IN_PROGRESS,
        TicketState.AWAITING_PAYOUT,
    }
)
FINISHED_STATES = (TicketState.GAME_COMPLETE, TicketState.CANCELLED)


@dataclass
class SweepReport:
    cancelled: List[str] = field(default_factory=list)
    in_flight: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    wagers: int = 0
    cooldowns: int = 0


class Housekeeper:
    def __init__(
        self,
        settings: Settings,
        tickets: TicketManager,
        idempotency: IdempotencyStore,
        locks: ChannelLocks,
        notifier: Notifier,
        persist: Callable[[], Awaitable[None]],
    ) -> None:
        self.settings = settings
        self.tickets = tickets
        self.idempotency = idempotency
        self.locks = locks
        self.notifier = notifier
        self.persist = persist
        self.interval_s = settings.housekeeping_interval_ms / 1000.0
        self.stale_s = settings.stale_ticket_ms / 1000.0
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        # channel id -> updated_at already reported, so a stuck ticket alerts once
        self._reported: Dict[str, float] = {}

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._run())
        log.info("housekeeping started (every %.1fs, stale after %.0fs)", self.interval_s, self.stale_s)

    async def stop(self) -> None:
        self._stop.set()
        if self._task is not None:
            await self._task
            self._task = None
        log.info("housekeeping stopped")

    async def _run(self) -> None:
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), self.interval_s)
            except asyncio.TimeoutError:
                pass
            if self._stop.is_set():
                break
            try:
                await self.sweep_once()
            except Exception:
                log.exception("housekeeping sweep failed")

    async def sweep_once(self) -> SweepReport:
        report = SweepReport()
        now = self.tickets.now()
        for ticket in self.tickets.get_active_tickets():
            idle = now - ticket.updated_at
            if idle <= self.stale_s:
                continue
            if ticket.state in PRE_PAYMENT_STATES:
                if await self._cancel_stale(ticket):
                    report.cancelled.append(ticket.channel_id)
            elif ticket.state in IN_FLIGHT_STATES:
                report.in_flight.append(ticket.channel_id)
                await self._report_in_flight(ticket, idle)

        finished_s = self.settings.finished_ticket_retention_ms / 1000.0
        for ticket in self.tickets.purge_finished_tickets(finished_s, FINISHED_STATES):
            report.removed.append(ticket.channel_id)
        error_s = self.settings.error_ticket_retention_ms / 1000.0
        for ticket in self.tickets.purge_finished_tickets(error_s, (TicketState.ERROR,)):
            report.removed.append(ticket.channel_id)
            await self.notifier.alert(
                f"ticket {ticket.channel_id} dropped after sitting in ERROR: {ticket.data.error_reason}"
            )

        report.wagers = self.tickets.purge_expired_wagers()
        report.cooldowns = self.tickets.purge_expired_cooldowns()
        for channel_id in list(self._reported):
            if channel_id not in self.tickets.tickets:
                del self._reported[channel_id]

        if report.cancelled or report.removed or report.wagers:
            try:
                await self.persist()
            except PersistenceError:
                log.exception("could not persist housekeeping sweep")
            log.info(
                "housekeeping: %d cancelled, %d removed, %d wager(s) and %d cooldown(s) expired",
                len(report.cancelled),
                len(report.removed),
                report.wagers,
                report.cooldowns,
            )
        return report

    async def _cancel_stale(self, ticket: Ticket) -> bool:
        try:
            async with self.locks.acquire(ticket.channel_id):
                if ticket.state not in PRE_PAYMENT_STATES:
                    return False
                if self.tickets.now() - ticket.updated_at <= self.stale_s:
                    return False
                if ticket.data.payment_locked or self.idempotency.records_for_ticket(ticket.channel_id):
                    log.warning("ticket %s is idle but has a payment record; leaving it", ticket.channel_id)
                    return False
                ticket.transition(TicketState.CANCELLED)
        except LockTimeout as exc:
            log.warning("stale ticket %s skipped: %s", ticket.channel_id, exc)
            return False
        except InvalidStateTransition as exc:
            log.error("could not cancel stale ticket %s: %s", ticket.channel_id, exc)
            return False
        log.info("ticket %s cancelled after %.0fs without progress", ticket.channel_id, self.stale_s)
        self.tickets.schedule_removal(ticket.channel_id, self.settings.payout_grace_ms / 1000.0)
        return True

    async def _report_in_flight(self, ticket: Ticket, idle: float) -> None:
        log.warning(
            "ticket %s idle for %d min in %s with our stake sent",
            ticket.channel_id,
            int(idle // 60),
            ticket.state.value,
        )
        if self._reported.get(ticket.channel_id) == ticket.updated_at:
            return
        self._reported[ticket.channel_id] = ticket.updated_at
        await self.notifier.alert(
            f"ticket {ticket.channel_id} stuck in {ticket.state.value} for {int(idle // 60)} min; needs a look"
        )
