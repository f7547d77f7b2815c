"""Ticket states, legal edges and the per-state data contract."""

import logging
import time
from dataclasses import asdict, dataclass, field, fields
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Optional

from .errors import InvalidStateTransition
from .units import to_decimal

log = logging.getLogger(__name__)


class TicketState(str, Enum):
    AWAITING_TICKET = "AWAITING_TICKET"
    AWAITING_MIDDLEMAN = "AWAITING_MIDDLEMAN"
    AWAITING_PAYMENT_ADDRESS = "AWAITING_PAYMENT_ADDRESS"
    PAYMENT_SENT = "PAYMENT_SENT"
    AWAITING_GAME_START = "AWAITING_GAME_START"
    GAME_IN_PROGRESS = "GAME_IN_PROGRESS"
    AWAITING_PAYOUT = "AWAITING_PAYOUT"
    GAME_COMPLETE = "GAME_COMPLETE"
    CANCELLED = "CANCELLED"
    ERROR = "ERROR"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES: FrozenSet[TicketState] = frozenset(
    {TicketState.GAME_COMPLETE, TicketState.CANCELLED, TicketState.ERROR}
)

_FORWARD: Dict[TicketState, FrozenSet[TicketState]] = {
    TicketState.AWAITING_TICKET: frozenset({TicketState.AWAITING_MIDDLEMAN}),
    TicketState.AWAITING_MIDDLEMAN: frozenset({TicketState.AWAITING_PAYMENT_ADDRESS}),
    TicketState.AWAITING_PAYMENT_ADDRESS: frozenset({TicketState.PAYMENT_SENT}),
    TicketState.PAYMENT_SENT: frozenset({TicketState.AWAITING_GAME_START}),
    TicketState.AWAITING_GAME_START: frozenset({TicketState.GAME_IN_PROGRESS}),
    TicketState.GAME_IN_PROGRESS: frozenset({TicketState.AWAITING_PAYOUT, TicketState.GAME_COMPLETE}),
    TicketState.AWAITING_PAYOUT: frozenset({TicketState.GAME_COMPLETE}),
}


def allowed_transitions(state: TicketState) -> FrozenSet[TicketState]:
    if state.terminal:
        return frozenset()
    return _FORWARD.get(state, frozenset()) | {TicketState.CANCELLED, TicketState.ERROR}


def can_transition(current: TicketState, nxt: TicketState) -> bool:
    return nxt in allowed_transitions(current)


@dataclass
class TicketData:
    opponent_id: Optional[str] = None
    opponent_name: Optional[str] = None
    opponent_bet: Optional[Decimal] = None
    our_bet: Optional[Decimal] = None
    public_channel_id: Optional[str] = None
    middleman_id: Optional[str] = None
    chain: str = "LTC"
    recipient_address: Optional[str] = None
    payment_locked: bool = False
    payment_id: Optional[str] = None
    send_tx_id: Optional[str] = None
    game_scores: Optional[Dict[str, int]] = None
    game_rounds: List[list] = field(default_factory=list)
    game_winner: Optional[str] = None
    payout_tx_id: Optional[str] = None
    bot_goes_first: bool = False
    error_reason: Optional[str] = None

    @property
    def pot(self) -> Decimal:
        return (self.opponent_bet or Decimal(0)) + (self.our_bet or Decimal(0))

    def apply(self, patch: Dict[str, Any]) -> None:
        known = {f.name for f in fields(self)}
        unknown = set(patch) - known
        if unknown:
            raise InvalidStateTransition(f"unknown ticket fields: {', '.join(sorted(unknown))}")
        for key, value in patch.items():
            if key in ("opponent_bet", "our_bet") and value is not None:
                value = to_decimal(value)
            setattr(self, key, value)

    def to_dict(self) -> dict:
        payload = asdict(self)
        for key in ("opponent_bet", "our_bet"):
            if payload[key] is not None:
                payload[key] = str(payload[key])
        return payload

    @classmethod
    def from_dict(cls, payload: dict) -> "TicketData":
        data = cls()
        data.apply(dict(payload or {}))
        return data


# fields a ticket must carry once it sits in a given state
REQUIRED_FIELDS: Dict[TicketState, Dict[str, Callable[[Any], bool]]] = {
    TicketState.AWAITING_PAYMENT_ADDRESS: {"middleman_id": bool},
    TicketState.PAYMENT_SENT: {
        "recipient_address": bool,
        "send_tx_id": bool,
        "payment_locked": lambda v: v is True,
    },
    TicketState.GAME_IN_PROGRESS: {"game_scores": lambda v: v is not None},
    TicketState.AWAITING_PAYOUT: {"game_winner": lambda v: v == "bot"},
    TicketState.GAME_COMPLETE: {"game_winner": lambda v: v in ("bot", "opponent")},
}


def check_required(state: TicketState, data: TicketData) -> None:
    for name, ok in REQUIRED_FIELDS.get(state, {}).items():
        if not ok(getattr(data, name)):
            raise InvalidStateTransition(f"{state.value} requires a valid {name}")


class Ticket:
    def __init__(
        self,
        channel_id: str,
        *,
        state: TicketState = TicketState.AWAITING_TICKET,
        data: Optional[TicketData] = None,
        created_at: Optional[float] = None,
        updated_at: Optional[float] = None,
        history: Optional[List[dict]] = None,
        on_change: Optional[Callable[["Ticket"], None]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.channel_id = str(channel_id)
        self.state = state
        self.data = data or TicketData()
        self.clock = clock
        self.created_at = created_at or clock()
        self.updated_at = updated_at or self.created_at
        self.history: List[dict] = history or []
        self.on_change = on_change

    def __repr__(self) -> str:
        return f"Ticket({self.channel_id}, {self.state.value})"

    @property
    def active(self) -> bool:
        return not self.state.terminal

    def transition(self, nxt: TicketState, **patch: Any) -> None:
        """Move to ``nxt`` and merge ``patch``; all or nothing."""
        if not can_transition(self.state, nxt):
            raise InvalidStateTransition(f"{self.state.value} -> {nxt.value} is not allowed ({self.channel_id})")
        candidate = TicketData.from_dict(self.data.to_dict())
        candidate.apply(patch)
        check_required(nxt, candidate)

        previous = self.state
        self.data = candidate
        self.state = nxt
        self.updated_at = self.clock()
        self.history.append({"from": previous.value, "to": nxt.value, "at": self.updated_at})
        log.info("ticket %s: %s -> %s", self.channel_id, previous.value, nxt.value)
        self._changed()

    def update_data(self, **patch: Any) -> None:
        candidate = TicketData.from_dict(self.data.to_dict())
        candidate.apply(patch)
        check_required(self.state, candidate)
        self.data = candidate
        self.updated_at = self.clock()
        self._changed()

    def _changed(self) -> None:
        if self.on_change:
            self.on_change(self)

    def to_dict(self) -> dict:
        return {
            "channelId": self.channel_id,
            "state": self.state.value,
            "data": self.data.to_dict(),
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "history": list(self.history),
        }

    @classmethod
    def from_dict(cls, payload: dict) -> "Ticket":
        state = TicketState(payload["state"])
        data = TicketData.from_dict(payload.get("data") or {})
        check_required(state, data)
        return cls(
            str(payload["channelId"]),
            state=state,
            data=data,
            created_at=float(payload.get("createdAt") or time.time()),
            updated_at=float(payload.get("updatedAt") or time.time()),
            history=list(payload.get("history") or []),
        )
