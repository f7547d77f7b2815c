import logging
from decimal import Decimal
from typing import Dict, Tuple

from .chains import ChainAdapter
from .config import Settings
from .errors import RpcFatal
from .locks import Outbox
from .patterns import extract_bet_offer
from .tickets import PendingWager, TicketManager
from .units import format_amount, quantize

log = logging.getLogger(__name__)


def compute_quote(opponent_bet: Decimal, settings: Settings) -> Tuple[Decimal, str]:
    """Our stake for an offer and the counter-offer figure shown in chat."""
    our_bet = quantize(opponent_bet * (1 + settings.markup), settings.chain)
    shown = format_amount(our_bet * (1 - settings.tax_percentage))
    return our_bet, shown


class SnipeHandler:
    """Turns bet offers seen in monitored public channels into pending wagers."""

    def __init__(
        self,
        settings: Settings,
        tickets: TicketManager,
        adapters: Dict[str, ChainAdapter],
        outbox: Outbox,
    ) -> None:
        self.settings = settings
        self.tickets = tickets
        self.adapters = adapters
        self.outbox = outbox

    async def handle(self, message) -> bool:
        offer = extract_bet_offer(message.content or "")
        if offer is None:
            return False
        user_id = str(message.author.id)
        settings = self.settings

        if not settings.min_bet <= offer.opponent <= settings.max_bet:
            log.info(
                "ignoring %s bet from %s: outside limits %s-%s",
                offer.opponent,
                user_id,
                settings.min_bet,
                settings.max_bet,
            )
            return False
        if self.tickets.is_on_cooldown(user_id):
            log.debug("ignoring bet from %s: on cooldown", user_id)
            return False
        if self.tickets.get_ticket_by_user(user_id) is not None:
            log.debug("ignoring bet from %s: ticket already open", user_id)
            return False

        our_bet, shown = compute_quote(offer.opponent, settings)
        adapter = self.adapters[settings.chain]
        try:
            balance = await adapter.get_balance()
        except RpcFatal as exc:
            log.error("balance check failed, not sniping %s: %s", user_id, exc)
            return False
        if balance < our_bet:
            log.warning(
                "insufficient funds to snipe %s: need %s %s, have %s",
                user_id,
                our_bet,
                settings.chain,
                balance,
            )
            await self.outbox.send(message.channel, settings.template("insufficient_funds"), reply_to=message)
            return False

        self.tickets.store_pending_wager(
            PendingWager(
                opponent_id=user_id,
                opponent_bet=offer.opponent,
                our_bet=our_bet,
                public_channel_id=str(message.channel.id),
                opponent_name=getattr(message.author, "name", None),
                chain=settings.chain,
            )
        )
        self.tickets.set_cooldown(user_id, settings.cooldown_ms)
        await self.outbox.send(
            message.channel,
            settings.template("bet_offer").format(calculated=shown),
            reply_to=message,
        )
        log.info("sniped %s: %s vs %s (%s)", user_id, offer.opponent, our_bet, settings.chain)
        return True
