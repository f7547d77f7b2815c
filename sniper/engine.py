"""Owns every engine component and their lifetimes."""

import logging
import time
from typing import Callable, Dict, List, Optional

from .chains import ChainAdapter, build_adapters
from .config import Settings
from .housekeeping import Housekeeper
from .idempotency import IdempotencyStore, PaymentStatus
from .locks import ChannelLocks, Outbox
from .notifier import Notifier
from .payout import PayoutMonitor
from .persistence import SnapshotStore
from .router import MessageRouter
from .snipe import SnipeHandler
from .state import TicketState
from .ticket_flow import TicketFlow
from .tickets import TicketManager

log = logging.getLogger(__name__)


class Engine:
    def __init__(
        self,
        settings: Settings,
        *,
        adapters: Optional[Dict[str, ChainAdapter]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.adapters = adapters if adapters is not None else build_adapters(settings)
        self.tickets = TicketManager(wager_ttl_ms=settings.pending_wager_ttl_ms, clock=clock)
        self.idempotency = IdempotencyStore()
        self.snapshots = SnapshotStore(
            settings.state_path,
            self.snapshot,
            debounce_ms=settings.persistence_debounce_ms,
        )
        self.tickets.set_on_change(self.snapshots.schedule)
        self.idempotency.set_on_change(self.snapshots.schedule)

        self.locks = ChannelLocks(timeout_ms=settings.lock_timeout_ms)
        self.outbox = Outbox(spacing_ms=settings.message_spacing_ms)
        self.notifier = Notifier(settings, self.outbox)
        self.tickets.add_remove_listener(self.outbox.forget)
        self.flow = TicketFlow(
            settings,
            self.tickets,
            self.idempotency,
            self.adapters,
            self.outbox,
            self.notifier,
            persist=self.snapshots.flush,
        )
        self.snipe = SnipeHandler(settings, self.tickets, self.adapters, self.outbox)
        self.router = MessageRouter(settings, self.snipe, self.flow, self.locks, self.outbox)
        self.payouts = PayoutMonitor(
            settings,
            self.tickets,
            self.adapters,
            self.locks,
            self.notifier,
            persist=self.snapshots.flush,
        )
        self.housekeeper = Housekeeper(
            settings,
            self.tickets,
            self.idempotency,
            self.locks,
            self.notifier,
            persist=self.snapshots.flush,
        )
        self.started = False
        self._pending_alerts: List[str] = []

    def snapshot(self) -> dict:
        tickets, wagers = self.tickets.snapshot()
        return {
            "tickets": tickets,
            "pendingWagers": wagers,
            "idempotency": self.idempotency.snapshot(),
        }

    def restore(self) -> None:
        document = self.snapshots.load()
        if document is None:
            log.info("no snapshot at %s; starting fresh", self.snapshots.path)
            return
        loaded, bad_payments = self.idempotency.restore(document.get("idempotency") or [])
        rejected = [{"kind": "payment", "record": r} for r in bad_payments]
        rejected += self.tickets.restore(document.get("tickets") or [], document.get("pendingWagers") or [])
        self.snapshots.quarantine(rejected)
        log.info(
            "restored %d ticket(s), %d pending wager(s), %d payment record(s) %s",
            len(self.tickets.tickets),
            len(self.tickets.pending_wagers),
            loaded,
            self.idempotency.stats(),
        )

    def reconcile(self) -> List[str]:
        """Line tickets up with payment records after a restart."""
        notes = []
        for record in self.idempotency.snapshot():
            payment_id = record["paymentId"]
            status = PaymentStatus(record["status"])
            ticket = self.tickets.get_ticket(record["ticketId"])
            if ticket is None or ticket.state is not TicketState.AWAITING_PAYMENT_ADDRESS:
                continue
            if status is PaymentStatus.INTENT:
                ticket.transition(
                    TicketState.ERROR,
                    error_reason=f"payment {payment_id} was never confirmed as broadcast",
                )
                note = (
                    f"ticket {ticket.channel_id}: payment {payment_id} to {record['address']} "
                    "stopped before broadcast confirmation; verify on-chain before retrying"
                )
                log.warning("%s", note)
            else:
                ticket.transition(
                    TicketState.PAYMENT_SENT,
                    recipient_address=record["address"],
                    send_tx_id=record["txId"],
                    payment_locked=True,
                    payment_id=payment_id,
                )
                note = f"ticket {ticket.channel_id}: recovered broadcast payment {record['txId']}"
                log.info("%s", note)
            notes.append(note)
        return notes

    async def start(self) -> None:
        """Restore state; call before any message is routed."""
        if self.started:
            return
        self.restore()
        self._pending_alerts = self.reconcile()
        self.tickets.purge_expired_wagers()
        await self.snapshots.flush()
        self.started = True
        log.info("engine started (chain=%s, simulation=%s)", self.settings.chain, self.settings.simulation_mode)

    async def attach(self, client) -> None:
        """Bind the connected chat client and start background work."""
        user = client.user
        self.flow.bind_identity(user.id, [getattr(user, "name", None), getattr(user, "display_name", None)])
        self.payouts.start(client)
        self.housekeeper.start()
        alerts, self._pending_alerts = self._pending_alerts, []
        for text in alerts:
            await self.notifier.alert(text)

    async def handle_message(self, message) -> Optional[str]:
        if not self.started:
            log.debug("engine not started; dropping message %s", message.id)
            return None
        return await self.router.route(message)

    async def handle_edit(self, before, after) -> bool:
        if not self.started:
            return False
        return await self.router.route_edit(before, after)

    async def handle_channel_delete(self, channel) -> bool:
        if not self.started:
            return False
        return await self.router.route_channel_delete(channel)

    async def stop(self) -> None:
        await self.payouts.stop()
        await self.housekeeper.stop()
        await self.tickets.cancel_removals()
        await self.snapshots.close()
        for adapter in self.adapters.values():
            await adapter.close()
        self.started = False
        log.info("engine stopped")
