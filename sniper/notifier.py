import logging
from typing import Optional

from .config import Settings
from .locks import Outbox
from .state import Ticket
from .units import display_amount

log = logging.getLogger(__name__)


class Notifier:
    """Posts vouches and operator alerts; shared by the ticket flow and the payout monitor."""

    def __init__(self, settings: Settings, outbox: Outbox) -> None:
        self.settings = settings
        self.outbox = outbox
        self.client = None

    def bind(self, client) -> None:
        self.client = client

    async def _resolve(self, channel_id: Optional[str]):
        if not channel_id or self.client is None:
            return None
        channel = self.client.get_channel(int(channel_id))
        if channel is None:
            channel = await self.client.fetch_channel(int(channel_id))
        return channel

    async def post_vouch(self, ticket: Ticket) -> bool:
        data = ticket.data
        if data.game_winner != "bot":
            return False
        channel_id = self.settings.vouch_channel_id
        try:
            channel = await self._resolve(channel_id)
            if channel is None:
                log.info("no vouch channel configured; skipping vouch for %s", ticket.channel_id)
                return False
            text = self.settings.template("vouch_win").format(
                amount=display_amount(data.pot, data.chain),
                chain=data.chain,
                opponent=f"<@{data.opponent_id}>" if data.opponent_id else "opponent",
                middleman=f"<@{data.middleman_id}>" if data.middleman_id else "mm",
            )
            await self.outbox.send(channel, text)
        except Exception as exc:
            log.warning("failed to post vouch for %s: %s", ticket.channel_id, exc)
            return False
        log.info("vouch posted for ticket %s", ticket.channel_id)
        return True

    async def alert(self, text: str) -> bool:
        log.warning("operator alert: %s", text)
        try:
            channel = await self._resolve(self.settings.operator_channel_id)
            if channel is None:
                return False
            await self.outbox.send(channel, f"[sniper] {text}")
        except Exception:
            log.exception("failed to deliver operator alert")
            return False
        return True
