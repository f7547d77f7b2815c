import logging
from collections import OrderedDict
from enum import Enum
from typing import Optional

from .config import Settings
from .errors import LockTimeout
from .locks import ChannelLocks, Outbox
from .patterns import extract_dice_result
from .snipe import SnipeHandler
from .ticket_flow import TicketFlow

log = logging.getLogger(__name__)

SEEN_MESSAGE_LIMIT = 1000


class ChannelClass(str, Enum):
    DM = "DM"
    EXCLUDED = "EXCLUDED"
    TICKET = "TICKET"
    PUBLIC = "PUBLIC"
    UNKNOWN = "UNKNOWN"


def classify_channel(channel, settings: Settings) -> ChannelClass:
    if channel is None:
        return ChannelClass.UNKNOWN
    if getattr(channel, "guild", None) is None:
        return ChannelClass.DM
    name = (getattr(channel, "name", "") or "").lower()
    if any(pattern in name for pattern in settings.excluded_name_patterns):
        return ChannelClass.EXCLUDED
    if str(channel.id) in settings.monitored_public_ids:
        return ChannelClass.PUBLIC
    if any(pattern in name for pattern in settings.ticket_name_patterns):
        return ChannelClass.TICKET
    return ChannelClass.UNKNOWN


class MessageRouter:
    """Entry point for every chat message; never lets a handler error escape."""

    def __init__(
        self,
        settings: Settings,
        snipe: SnipeHandler,
        flow: TicketFlow,
        locks: ChannelLocks,
        outbox: Outbox,
    ) -> None:
        self.settings = settings
        self.snipe = snipe
        self.flow = flow
        self.locks = locks
        self.outbox = outbox
        self._seen: "OrderedDict[str, None]" = OrderedDict()

    def _first_sighting(self, message_id) -> bool:
        key = str(message_id)
        if key in self._seen:
            return False
        self._seen[key] = None
        if len(self._seen) > SEEN_MESSAGE_LIMIT:
            self._seen.popitem(last=False)
        return True

    async def route(self, message) -> Optional[str]:
        """Dispatch ``message``; returns the route taken, or None when ignored."""
        if not self._first_sighting(message.id):
            log.debug("duplicate delivery of message %s", message.id)
            return None
        content = message.content or ""
        author_id = str(message.author.id)
        is_self = self.flow.bot_id is not None and author_id == self.flow.bot_id
        has_dice = extract_dice_result(content) is not None
        if is_self and not has_dice:
            return None
        if getattr(message.author, "bot", False) and not is_self and not has_dice:
            return None

        channel = message.channel
        kind = classify_channel(channel, self.settings)
        try:
            if kind is ChannelClass.DM:
                if not is_self and content.strip().lower() == "!wallet":
                    await self.outbox.send(channel, self.wallet_text())
                    return "wallet"
                return None
            if self.flow.tickets.get_ticket(channel.id) is not None:
                async with self.locks.acquire(channel.id):
                    await self.flow.handle(message)
                return "ticket"
            if kind is ChannelClass.PUBLIC:
                if is_self or getattr(message.author, "bot", False):
                    return None
                async with self.locks.acquire(channel.id):
                    await self.snipe.handle(message)
                return "public"
            if kind is ChannelClass.TICKET:
                async with self.locks.acquire(channel.id):
                    await self.flow.handle(message)
                return "ticket"
            log.debug("ignoring message in %s channel %s", kind.value, channel.id)
            return None
        except LockTimeout as exc:
            log.warning("dropping message %s: %s", message.id, exc)
            return None
        except Exception:
            log.exception("unhandled error routing message %s in %s", message.id, channel.id)
            return None

    def wallet_text(self) -> str:
        addresses = self.settings.payout_addresses
        if not addresses:
            return "No payout addresses configured."
        lines = [f"{chain}: `{address}`" for chain, address in sorted(addresses.items())]
        return "\n".join(lines)

    async def route_edit(self, before, after) -> bool:
        if (before.content or "") == (after.content or ""):
            return False
        if self.flow.tickets.get_ticket(after.channel.id) is None:
            return False
        try:
            async with self.locks.acquire(after.channel.id):
                return await self.flow.handle_edit(before, after)
        except LockTimeout as exc:
            log.warning("dropping edit of %s: %s", after.id, exc)
        except Exception:
            log.exception("unhandled error checking edit in %s", after.channel.id)
        return False

    async def route_channel_delete(self, channel) -> bool:
        self.outbox.forget(channel.id)
        try:
            async with self.locks.acquire(channel.id):
                return await self.flow.handle_channel_delete(channel.id)
        except LockTimeout as exc:
            log.warning("dropping delete of %s: %s", channel.id, exc)
        except Exception:
            log.exception("unhandled error purging channel %s", channel.id)
        return False
