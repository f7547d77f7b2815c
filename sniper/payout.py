import asyncio
import logging
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set

from .chains import INBOUND, ChainAdapter, ChainTransaction
from .config import Settings
from .errors import InvalidStateTransition, LockTimeout, PersistenceError, RpcFatal
from .locks import ChannelLocks
from .notifier import Notifier
from .state import Ticket, TicketState
from .tickets import TicketManager
from .units import amounts_equal

log = logging.getLogger(__name__)

RECENT_TX_LIMIT = 25


def find_payout(
    ticket: Ticket,
    transactions: Iterable[ChainTransaction],
    *,
    skew_s: float,
    claimed: Set[str],
) -> Optional[ChainTransaction]:
    """First inbound, confirmed, fresh transaction paying exactly the pot."""
    pot = ticket.data.pot
    not_before = ticket.updated_at - skew_s
    for tx in transactions:
        if tx.direction != INBOUND or tx.tx_id in claimed:
            continue
        if tx.confirmations < 1:
            continue
        if tx.timestamp < not_before:
            continue
        if not amounts_equal(tx.amount, pot, ticket.data.chain):
            continue
        return tx
    return None


class PayoutMonitor:
    def __init__(
        self,
        settings: Settings,
        tickets: TicketManager,
        adapters: Dict[str, ChainAdapter],
        locks: ChannelLocks,
        notifier: Notifier,
        persist: Callable[[], Awaitable[None]],
    ) -> None:
        self.settings = settings
        self.tickets = tickets
        self.adapters = adapters
        self.locks = locks
        self.notifier = notifier
        self.persist = persist
        self.interval_s = settings.scan_interval_ms / 1000.0
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, client=None) -> None:
        if client is not None:
            self.notifier.bind(client)
        if self.running:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._run())
        log.info("payout monitor started (every %.1fs)", self.interval_s)

    async def stop(self) -> None:
        self._stop.set()
        if self._task is not None:
            await self._task
            self._task = None
        log.info("payout monitor stopped")

    async def _run(self) -> None:
        while not self._stop.is_set():
            try:
                await self.scan_once()
            except Exception:
                log.exception("payout scan failed")
            try:
                await asyncio.wait_for(self._stop.wait(), self.interval_s)
            except asyncio.TimeoutError:
                pass

    def _claimed(self) -> Set[str]:
        return {t.data.payout_tx_id for t in self.tickets.tickets.values() if t.data.payout_tx_id}

    async def scan_once(self) -> int:
        waiting = self.tickets.tickets_in_state(TicketState.AWAITING_PAYOUT)
        if not waiting:
            return 0
        by_chain: Dict[str, List[Ticket]] = {}
        for ticket in waiting:
            by_chain.setdefault(ticket.data.chain, []).append(ticket)

        claimed = self._claimed()
        skew_s = self.settings.payout_skew_ms / 1000.0
        completed = 0
        for chain, chain_tickets in by_chain.items():
            adapter = self.adapters.get(chain)
            if adapter is None:
                log.error("no adapter for %s; %d ticket(s) cannot be reconciled", chain, len(chain_tickets))
                continue
            try:
                transactions = await adapter.get_recent_transactions(RECENT_TX_LIMIT)
            except RpcFatal as exc:
                log.error("could not list %s transactions: %s", chain, exc)
                continue
            for ticket in chain_tickets:
                tx = find_payout(ticket, transactions, skew_s=skew_s, claimed=claimed)
                if tx is None:
                    continue
                if await self._complete(ticket, tx):
                    claimed.add(tx.tx_id)
                    completed += 1
        return completed

    async def _complete(self, ticket: Ticket, tx: ChainTransaction) -> bool:
        try:
            async with self.locks.acquire(ticket.channel_id):
                if ticket.state is not TicketState.AWAITING_PAYOUT:
                    return False
                ticket.transition(TicketState.GAME_COMPLETE, payout_tx_id=tx.tx_id, game_winner="bot")
                try:
                    await self.persist()
                except PersistenceError:
                    log.exception("could not persist payout of %s", ticket.channel_id)
                log.info(
                    "payout for %s received: %s %s in %s",
                    ticket.channel_id,
                    tx.amount,
                    ticket.data.chain,
                    tx.tx_id,
                )
                await self.notifier.post_vouch(ticket)
                self.tickets.schedule_removal(ticket.channel_id, self.settings.payout_grace_ms / 1000.0)
                return True
        except LockTimeout as exc:
            log.warning("payout for %s deferred: %s", ticket.channel_id, exc)
        except InvalidStateTransition as exc:
            log.error("payout transition refused for %s: %s", ticket.channel_id, exc)
        return False
