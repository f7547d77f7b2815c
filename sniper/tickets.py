"""Registry of pending wagers, tickets and per-user cooldowns."""

import asyncio
import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .errors import DuplicateTicket, InvalidStateTransition, TicketNotFound
from .state import Ticket, TicketData, TicketState
from .units import to_decimal

log = logging.getLogger(__name__)

# correlation weights used when a ticket opens without an obvious owner
SCORE_ID_IN_NAME = 100
SCORE_MENTIONED = 90
SCORE_NAME_IN_CHANNEL = 80
SCORE_BET_MATCH = 70
SCORE_RECENCY_MAX = 30
MIN_CORRELATION = 50
AMBIGUITY_MARGIN = 30


@dataclass
class PendingWager:
    opponent_id: str
    opponent_bet: Decimal
    our_bet: Decimal
    public_channel_id: Optional[str] = None
    opponent_name: Optional[str] = None
    chain: str = "LTC"
    created_at: float = 0.0

    def to_dict(self) -> dict:
        return {
            "opponentId": self.opponent_id,
            "opponentBet": str(self.opponent_bet),
            "ourBet": str(self.our_bet),
            "publicChannelId": self.public_channel_id,
            "opponentName": self.opponent_name,
            "chain": self.chain,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, payload: dict) -> "PendingWager":
        opponent_bet = to_decimal(payload["opponentBet"])
        our_bet = to_decimal(payload["ourBet"])
        if opponent_bet is None or our_bet is None or opponent_bet <= 0 or our_bet <= 0:
            raise ValueError("wager amounts must be positive")
        return cls(
            opponent_id=str(payload["opponentId"]),
            opponent_bet=opponent_bet,
            our_bet=our_bet,
            public_channel_id=payload.get("publicChannelId"),
            opponent_name=payload.get("opponentName"),
            chain=str(payload.get("chain") or "LTC"),
            created_at=float(payload.get("createdAt") or 0.0),
        )

    def seed(self) -> dict:
        """Ticket data fields carried over from the public offer."""
        return {
            "opponent_id": self.opponent_id,
            "opponent_name": self.opponent_name,
            "opponent_bet": self.opponent_bet,
            "our_bet": self.our_bet,
            "public_channel_id": self.public_channel_id,
            "chain": self.chain,
        }


class TicketManager:
    def __init__(
        self,
        *,
        wager_ttl_ms: int = 600_000,
        on_change: Optional[Callable[[], None]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.wager_ttl_s = wager_ttl_ms / 1000.0
        self.pending_wagers: Dict[str, PendingWager] = {}
        self.tickets: Dict[str, Ticket] = {}
        self.user_index: Dict[str, str] = {}
        self.cooldowns: Dict[str, float] = {}
        self._removals: Dict[str, asyncio.Future] = {}
        self._on_change = on_change
        self._on_remove: List[Callable[[str], None]] = []
        self._clock = clock

    def now(self) -> float:
        return self._clock()

    def set_on_change(self, callback: Optional[Callable[[], None]]) -> None:
        self._on_change = callback

    def add_remove_listener(self, callback: Callable[[str], None]) -> None:
        """Call ``callback(channel_id)`` whenever a ticket leaves the registry."""
        self._on_remove.append(callback)

    def _changed(self, *_args) -> None:
        if self._on_change:
            self._on_change()

    def _ticket_changed(self, ticket: Ticket) -> None:
        if ticket.state.terminal:
            self._release_user(ticket)
        self._changed()

    def _release_user(self, ticket: Ticket) -> None:
        owner = ticket.data.opponent_id
        if owner and self.user_index.get(owner) == ticket.channel_id:
            del self.user_index[owner]

    # -- pending wagers -------------------------------------------------

    def _expired(self, wager: PendingWager) -> bool:
        return self._clock() - wager.created_at > self.wager_ttl_s

    def store_pending_wager(self, wager: PendingWager) -> PendingWager:
        if not wager.created_at:
            wager.created_at = self._clock()
        # one live offer per user; a newer offer replaces the old one
        self.pending_wagers[str(wager.opponent_id)] = wager
        log.info(
            "pending wager stored for %s: %s vs %s",
            wager.opponent_id,
            wager.opponent_bet,
            wager.our_bet,
        )
        self._changed()
        return wager

    def peek_pending_wager(self, user_id: str) -> Optional[PendingWager]:
        wager = self.pending_wagers.get(str(user_id))
        if wager is None:
            return None
        if self._expired(wager):
            self.pending_wagers.pop(str(user_id), None)
            log.info("pending wager for %s expired", user_id)
            self._changed()
            return None
        return wager

    def consume_pending_wager(self, user_id: str) -> Optional[PendingWager]:
        wager = self.peek_pending_wager(user_id)
        if wager is not None:
            del self.pending_wagers[str(user_id)]
            self._changed()
        return wager

    def purge_expired_wagers(self) -> int:
        expired = [uid for uid, wager in self.pending_wagers.items() if self._expired(wager)]
        for uid in expired:
            del self.pending_wagers[uid]
        if expired:
            self._changed()
        return len(expired)

    def correlate_pending_wager(
        self,
        channel_name: str,
        *,
        mentions: Iterable[str] = (),
        bet: Optional[Decimal] = None,
    ) -> Optional[PendingWager]:
        """Best live wager for a ticket channel, or None when nothing (or too much) matches.

        Scores each wager on the opener's id or name appearing in the channel
        name, on being mentioned, on the bet amount and on recency. The top
        candidate must clear ``MIN_CORRELATION`` and lead the runner-up by more
        than ``AMBIGUITY_MARGIN``. Does not consume the wager.
        """
        lowered = (channel_name or "").lower()
        mentioned = {str(m) for m in mentions}
        now = self._clock()
        scored: List[Tuple[int, PendingWager]] = []
        for user_id, wager in list(self.pending_wagers.items()):
            if self._expired(wager):
                continue
            score = 0
            if user_id.lower() in lowered:
                score += SCORE_ID_IN_NAME
            name = (wager.opponent_name or "").lower()
            if name and name in lowered:
                score += SCORE_NAME_IN_CHANNEL
            if user_id in mentioned:
                score += SCORE_MENTIONED
            if bet is not None and abs(bet - wager.opponent_bet) < Decimal("0.01"):
                score += SCORE_BET_MATCH
            score += max(0, SCORE_RECENCY_MAX - int((now - wager.created_at) // 10))
            scored.append((score, wager))

        if not scored:
            return None
        scored.sort(key=lambda item: item[0], reverse=True)
        best_score, best = scored[0]
        if len(scored) > 1 and best_score - scored[1][0] <= AMBIGUITY_MARGIN:
            log.warning(
                "ambiguous wager match for %s (top scores %s)",
                channel_name,
                [s for s, _ in scored[:3]],
            )
            return None
        if best_score < MIN_CORRELATION:
            return None
        log.info("channel %s correlated to wager of %s (score %d)", channel_name, best.opponent_id, best_score)
        return best

    # -- tickets --------------------------------------------------------

    def create_ticket(self, channel_id: str, seed: Optional[dict] = None) -> Ticket:
        channel_id = str(channel_id)
        if channel_id in self.tickets:
            raise DuplicateTicket(f"channel {channel_id} already has a ticket")
        data = TicketData()
        data.apply(dict(seed or {}))
        owner = data.opponent_id
        if owner:
            existing = self.get_ticket_by_user(owner)
            if existing is not None:
                raise DuplicateTicket(f"user {owner} already holds ticket {existing.channel_id}")
        ticket = Ticket(
            channel_id,
            data=data,
            created_at=self._clock(),
            on_change=self._ticket_changed,
            clock=self._clock,
        )
        self.tickets[channel_id] = ticket
        if owner:
            self.user_index[owner] = channel_id
        log.info("ticket created for channel %s (opponent=%s)", channel_id, owner)
        self._changed()
        return ticket

    def get_ticket(self, channel_id: str) -> Optional[Ticket]:
        return self.tickets.get(str(channel_id))

    def require_ticket(self, channel_id: str) -> Ticket:
        ticket = self.get_ticket(channel_id)
        if ticket is None:
            raise TicketNotFound(f"no ticket for channel {channel_id}")
        return ticket

    def get_ticket_by_user(self, user_id: str) -> Optional[Ticket]:
        channel_id = self.user_index.get(str(user_id))
        if channel_id is None:
            return None
        ticket = self.tickets.get(channel_id)
        if ticket is None or not ticket.active:
            self.user_index.pop(str(user_id), None)
            return None
        return ticket

    def get_active_tickets(self) -> List[Ticket]:
        return [t for t in self.tickets.values() if t.active]

    def tickets_in_state(self, state: TicketState) -> List[Ticket]:
        return [t for t in self.tickets.values() if t.state is state]

    def remove_ticket(self, channel_id: str) -> Optional[Ticket]:
        ticket = self.tickets.pop(str(channel_id), None)
        if ticket is not None:
            self._release_user(ticket)
            ticket.on_change = None
            log.info("ticket %s removed (%s)", ticket.channel_id, ticket.state.value)
            for callback in self._on_remove:
                callback(ticket.channel_id)
            self._changed()
        return ticket

    def purge_finished_tickets(self, max_age_s: float, states: Iterable[TicketState]) -> List[Ticket]:
        """Remove tickets in ``states`` untouched for longer than ``max_age_s``."""
        wanted = set(states)
        now = self._clock()
        old = [
            t for t in self.tickets.values() if t.state in wanted and now - t.updated_at > max_age_s
        ]
        for ticket in old:
            self.remove_ticket(ticket.channel_id)
        return old

    # -- cooldowns ------------------------------------------------------

    def set_cooldown(self, user_id: str, duration_ms: int) -> None:
        self.cooldowns[str(user_id)] = self._clock() + duration_ms / 1000.0
        self._changed()

    def is_on_cooldown(self, user_id: str) -> bool:
        until = self.cooldowns.get(str(user_id))
        if until is None:
            return False
        if self._clock() >= until:
            del self.cooldowns[str(user_id)]
            return False
        return True

    def purge_expired_cooldowns(self) -> int:
        now = self._clock()
        expired = [uid for uid, until in self.cooldowns.items() if now >= until]
        for uid in expired:
            del self.cooldowns[uid]
        return len(expired)

    # -- snapshot -------------------------------------------------------

    def snapshot(self) -> Tuple[List[dict], List[dict]]:
        tickets = [t.to_dict() for t in self.tickets.values()]
        wagers = [w.to_dict() for w in self.pending_wagers.values()]
        return tickets, wagers

    def restore(self, tickets: List[dict], wagers: List[dict]) -> List[dict]:
        """Rebuild indexes from a snapshot; returns the records that could not be loaded."""
        self.tickets.clear()
        self.user_index.clear()
        self.pending_wagers.clear()
        rejected = []
        for item in tickets or []:
            try:
                ticket = Ticket.from_dict(item)
            except (KeyError, TypeError, ValueError, InvalidStateTransition) as exc:
                log.warning("quarantining ticket record: %s", exc)
                rejected.append({"kind": "ticket", "record": item, "error": str(exc)})
                continue
            ticket.on_change = self._ticket_changed
            ticket.clock = self._clock
            self.tickets[ticket.channel_id] = ticket
            owner = ticket.data.opponent_id
            if owner and ticket.active:
                self.user_index[owner] = ticket.channel_id
        for item in wagers or []:
            try:
                wager = PendingWager.from_dict(item)
            except (KeyError, TypeError, ValueError) as exc:
                log.warning("quarantining pending wager: %s", exc)
                rejected.append({"kind": "wager", "record": item, "error": str(exc)})
                continue
            if not self._expired(wager):
                self.pending_wagers[wager.opponent_id] = wager
        return rejected

    # -- delayed cleanup ------------------------------------------------

    def schedule_removal(self, channel_id: str, delay_s: float) -> None:
        """Drop a finished ticket after ``delay_s`` seconds."""
        key = str(channel_id)
        if key in self._removals:
            return

        async def _remove_later() -> None:
            try:
                await asyncio.sleep(delay_s)
                self.remove_ticket(key)
            finally:
                self._removals.pop(key, None)

        self._removals[key] = asyncio.ensure_future(_remove_later())

    async def cancel_removals(self) -> None:
        tasks = list(self._removals.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._removals.clear()
