"""At-most-once bookkeeping for outgoing payments.

Every send is fingerprinted by (ticket, address, amount). The fingerprint is
claimed with ``record_intent`` *before* any network call and only moves
forward: INTENT -> BROADCAST -> CONFIRMED. A record that exists with status
BROADCAST or later blocks any further send for the same fingerprint, and
because records are part of the persisted snapshot the guarantee survives
restarts.
"""

import hashlib
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from .addresses import canonical_address
from .errors import InvalidStateTransition
from .units import quantize, to_decimal

log = logging.getLogger(__name__)


class PaymentStatus(str, Enum):
    INTENT = "INTENT"
    BROADCAST = "BROADCAST"
    CONFIRMED = "CONFIRMED"

    @property
    def rank(self) -> int:
        return _RANK[self]


_RANK = {PaymentStatus.INTENT: 0, PaymentStatus.BROADCAST: 1, PaymentStatus.CONFIRMED: 2}


@dataclass
class PaymentRecord:
    payment_id: str
    status: PaymentStatus
    address: str
    amount: Decimal
    ticket_id: str
    chain: str
    created_at: float
    updated_at: float
    tx_id: Optional[str] = None
    last_error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "paymentId": self.payment_id,
            "status": self.status.value,
            "address": self.address,
            "amount": str(self.amount),
            "ticketId": self.ticket_id,
            "chain": self.chain,
            "txId": self.tx_id,
            "lastError": self.last_error,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, payload: dict) -> "PaymentRecord":
        amount = to_decimal(payload["amount"])
        if amount is None:
            raise ValueError(f"bad amount {payload.get('amount')!r}")
        return cls(
            payment_id=str(payload["paymentId"]),
            status=PaymentStatus(payload["status"]),
            address=str(payload["address"]),
            amount=amount,
            ticket_id=str(payload["ticketId"]),
            chain=str(payload.get("chain") or "LTC"),
            tx_id=payload.get("txId"),
            last_error=payload.get("lastError"),
            created_at=float(payload.get("createdAt") or time.time()),
            updated_at=float(payload.get("updatedAt") or time.time()),
        )


@dataclass(frozen=True)
class SendPermission:
    can_send: bool
    reason: str
    existing_tx_id: Optional[str] = None


class IdempotencyStore:
    def __init__(self, *, on_change: Optional[Callable[[], None]] = None) -> None:
        self._records: Dict[str, PaymentRecord] = {}
        self._on_change = on_change

    def set_on_change(self, callback: Optional[Callable[[], None]]) -> None:
        self._on_change = callback

    def _changed(self) -> None:
        if self._on_change:
            self._on_change()

    @staticmethod
    def generate_payment_id(ticket_id: str, address: str, amount, chain: str = "LTC") -> str:
        chain = (chain or "LTC").upper()
        material = f"{ticket_id}:{chain}:{canonical_address(address, chain)}:{quantize(amount, chain)}"
        return hashlib.sha256(material.encode("utf-8")).hexdigest()[:32]

    def get(self, payment_id: str) -> Optional[PaymentRecord]:
        return self._records.get(payment_id)

    def records_for_ticket(self, ticket_id: str) -> List[PaymentRecord]:
        return [r for r in self._records.values() if r.ticket_id == ticket_id]

    def record_intent(self, payment_id: str, address: str, amount, ticket_id: str, chain: str = "LTC") -> bool:
        existing = self._records.get(payment_id)
        if existing is not None:
            log.warning(
                "payment %s already recorded (status=%s tx=%s)",
                payment_id,
                existing.status.value,
                existing.tx_id,
            )
            return False
        now = time.time()
        self._records[payment_id] = PaymentRecord(
            payment_id=payment_id,
            status=PaymentStatus.INTENT,
            address=address,
            amount=to_decimal(amount, Decimal(0)),
            ticket_id=str(ticket_id),
            chain=chain.upper(),
            created_at=now,
            updated_at=now,
        )
        log.info("payment intent recorded %s (ticket=%s)", payment_id, ticket_id)
        self._changed()
        return True

    def record_broadcast(self, payment_id: str, tx_id: str) -> None:
        record = self._records.get(payment_id)
        if record is None:
            raise InvalidStateTransition(f"no payment intent {payment_id}")
        if record.status is not PaymentStatus.INTENT:
            raise InvalidStateTransition(
                f"payment {payment_id} is {record.status.value}, cannot mark broadcast"
            )
        record.status = PaymentStatus.BROADCAST
        record.tx_id = tx_id
        record.last_error = None
        record.updated_at = time.time()
        log.info("payment broadcast %s tx=%s", payment_id, tx_id)
        self._changed()

    def record_confirmed(self, payment_id: str) -> None:
        record = self._records.get(payment_id)
        if record is None:
            raise InvalidStateTransition(f"no payment {payment_id}")
        if record.status is PaymentStatus.CONFIRMED:
            return
        if record.status is not PaymentStatus.BROADCAST:
            raise InvalidStateTransition(
                f"payment {payment_id} is {record.status.value}, cannot confirm"
            )
        record.status = PaymentStatus.CONFIRMED
        record.updated_at = time.time()
        log.info("payment confirmed %s tx=%s", payment_id, record.tx_id)
        self._changed()

    def record_error(self, payment_id: str, error: str) -> None:
        """Annotate a record without moving its status."""
        record = self._records.get(payment_id)
        if record is None:
            return
        record.last_error = error
        record.updated_at = time.time()
        self._changed()

    def can_send(self, payment_id: str) -> SendPermission:
        record = self._records.get(payment_id)
        if record is None:
            return SendPermission(True, "new payment")
        if record.status.rank >= PaymentStatus.BROADCAST.rank:
            return SendPermission(
                False,
                f"payment already {record.status.value.lower()}",
                existing_tx_id=record.tx_id,
            )
        return SendPermission(True, "intent recorded, not yet broadcast")

    def daily_spend(self, day: Optional[datetime] = None) -> Decimal:
        day = (day or datetime.now(timezone.utc)).date()
        total = Decimal(0)
        for record in self._records.values():
            if record.status.rank < PaymentStatus.BROADCAST.rank:
                continue
            if datetime.fromtimestamp(record.created_at, timezone.utc).date() == day:
                total += record.amount
        return total

    def stats(self) -> Dict[str, int]:
        counts = {status.value.lower(): 0 for status in PaymentStatus}
        for record in self._records.values():
            counts[record.status.value.lower()] += 1
        counts["total"] = len(self._records)
        return counts

    def snapshot(self) -> List[dict]:
        return [record.to_dict() for record in self._records.values()]

    def restore(self, payload: List[dict]) -> Tuple[int, List[dict]]:
        """Load records; returns (loaded, rejected) so callers can quarantine."""
        self._records.clear()
        rejected = []
        for item in payload or []:
            try:
                record = PaymentRecord.from_dict(item)
            except (KeyError, TypeError, ValueError) as exc:
                log.warning("quarantining payment record: %s", exc)
                rejected.append(item)
                continue
            self._records[record.payment_id] = record
        return len(self._records), rejected
