"""Error kinds raised across the engine.

Handlers recover the "local" kinds (insufficient funds, bad address,
duplicate payment, spend caps) with a single reply; RPC, state and
persistence failures push the ticket to ERROR and alert the operator.
"""

from typing import Optional


class SniperError(Exception):
    """Base class for every engine error."""


class ConfigError(SniperError):
    pass


class InsufficientBalance(SniperError):
    def __init__(self, required, available) -> None:
        super().__init__(f"insufficient balance: need {required}, have {available}")
        self.required = required
        self.available = available


class InvalidAddress(SniperError):
    pass


class SelfAddressRejected(InvalidAddress):
    pass


class DuplicatePayment(SniperError):
    def __init__(self, payment_id: str, reason: str, tx_id: Optional[str] = None) -> None:
        super().__init__(f"payment {payment_id} refused: {reason}")
        self.payment_id = payment_id
        self.reason = reason
        self.tx_id = tx_id


class PaymentLimitExceeded(SniperError):
    pass


class RpcTransient(SniperError):
    """Network-level failure worth retrying (timeouts, 429, 5xx)."""


class RpcFatal(SniperError):
    """RPC failure that retrying will not fix."""


class InvalidStateTransition(SniperError):
    pass


class TicketNotFound(SniperError):
    pass


class DuplicateTicket(SniperError):
    pass


class LockTimeout(SniperError):
    pass


class PersistenceError(SniperError):
    pass


# errors that are answered in-channel and leave ticket state untouched
LOCALLY_RECOVERED = (
    InsufficientBalance,
    InvalidAddress,
    DuplicatePayment,
    PaymentLimitExceeded,
)
