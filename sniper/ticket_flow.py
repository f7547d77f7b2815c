"""Per-ticket conversation handling.

Every public coroutine here runs under the ticket channel's lock (taken by the
router or the engine), so state read at the top of a handler is still current
when its transition is persisted.
"""

import logging
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set

from .addresses import canonical_address, extract_crypto_address, find_crypto_addresses
from .chains import ChainAdapter
from .config import Settings
from .errors import (
    DuplicatePayment,
    DuplicateTicket,
    InsufficientBalance,
    InvalidAddress,
    InvalidStateTransition,
    LOCALLY_RECOVERED,
    PaymentLimitExceeded,
    PersistenceError,
    RpcFatal,
    RpcTransient,
    SelfAddressRejected,
)
from .idempotency import IdempotencyStore, PaymentStatus
from .locks import Outbox
from .notifier import Notifier
from .patterns import (
    bot_goes_first,
    extract_bet_offer,
    extract_dice_result,
    is_cancellation,
    is_game_start,
    is_payment_confirmation,
    is_roll_request,
    mentioned_ids,
)
from .scoring import BOT, OPPONENT, ScoreTracker
from .state import Ticket, TicketState
from .tickets import PendingWager, TicketManager
from .units import display_amount, quantize

log = logging.getLogger(__name__)

HISTORY_SCAN_LIMIT = 25


def _author_id(message) -> str:
    return str(message.author.id)


def _is_bot_author(message) -> bool:
    return bool(getattr(message.author, "bot", False))


def roll_targets(message) -> Set[str]:
    """Members a dice-bot message points at: mentions, the replied-to author, the slash-command user."""
    targets = set(mentioned_ids(message.content or ""))
    for member in getattr(message, "mentions", None) or []:
        targets.add(str(member.id))
    reference = getattr(message, "reference", None)
    resolved = getattr(reference, "resolved", None)
    if getattr(resolved, "author", None) is not None:
        targets.add(str(resolved.author.id))
    interaction = getattr(message, "interaction_metadata", None)
    if getattr(interaction, "user", None) is not None:
        targets.add(str(interaction.user.id))
    return targets


class TicketFlow:
    def __init__(
        self,
        settings: Settings,
        tickets: TicketManager,
        idempotency: IdempotencyStore,
        adapters: Dict[str, ChainAdapter],
        outbox: Outbox,
        notifier: Notifier,
        persist: Callable[[], Awaitable[None]],
    ) -> None:
        self.settings = settings
        self.tickets = tickets
        self.idempotency = idempotency
        self.adapters = adapters
        self.outbox = outbox
        self.notifier = notifier
        self.persist = persist
        self.bot_id: Optional[str] = None
        self.bot_names: List[str] = []
        self._trackers: Dict[str, ScoreTracker] = {}

    def bind_identity(self, bot_id, names: Iterable[str] = ()) -> None:
        self.bot_id = str(bot_id)
        self.bot_names = [n for n in names if n]

    def _adapter(self, chain: str) -> ChainAdapter:
        adapter = self.adapters.get(chain)
        if adapter is None:
            raise RpcFatal(f"no adapter for {chain}")
        return adapter

    def _is_middleman(self, message, ticket: Optional[Ticket] = None) -> bool:
        author = _author_id(message)
        if self.settings.is_middleman(author):
            return True
        return bool(ticket and ticket.data.middleman_id and ticket.data.middleman_id == author)

    async def _reply(self, message, text: str) -> None:
        await self.outbox.send(message.channel, text, reply_to=message)

    # -- entry points ---------------------------------------------------

    async def handle(self, message) -> bool:
        ticket = self.tickets.get_ticket(message.channel.id)
        if ticket is None:
            return await self.latch(message)
        if not ticket.active:
            return False
        try:
            if self._is_middleman(message, ticket) and is_cancellation(
                message.content, self.settings.cancellation_keywords
            ):
                await self._cancel(message, ticket)
                return True
            return await self._dispatch(message, ticket)
        except LOCALLY_RECOVERED as exc:
            await self._recover_locally(message, ticket, exc)
            return True
        except (RpcFatal, RpcTransient, InvalidStateTransition, PersistenceError) as exc:
            await self.fail(ticket, exc)
            return True

    async def _dispatch(self, message, ticket: Ticket) -> bool:
        state = ticket.state
        if state is TicketState.AWAITING_TICKET:
            return await self._on_awaiting_ticket(message, ticket)
        if state is TicketState.AWAITING_MIDDLEMAN:
            return await self._on_awaiting_middleman(message, ticket)
        if state is TicketState.AWAITING_PAYMENT_ADDRESS:
            return await self._on_payment_address(message, ticket)
        if state is TicketState.PAYMENT_SENT:
            return await self._on_payment_sent(message, ticket)
        if state is TicketState.AWAITING_GAME_START:
            return await self._on_awaiting_game_start(message, ticket)
        if state is TicketState.GAME_IN_PROGRESS:
            return await self._on_game_message(message, ticket)
        return False

    # -- latching -------------------------------------------------------

    async def _collect_candidates(self, message) -> List[str]:
        """User ids that may own this ticket, most likely first."""
        seen: List[str] = []

        def add(user_id) -> None:
            user_id = str(user_id)
            if user_id == self.bot_id or self.settings.is_middleman(user_id) or user_id in seen:
                return
            seen.append(user_id)

        if not _is_bot_author(message):
            add(_author_id(message))
        for user_id in mentioned_ids(message.content or ""):
            add(user_id)
        history = getattr(message.channel, "history", None)
        if history is not None:
            try:
                async for past in history(limit=HISTORY_SCAN_LIMIT):
                    if _is_bot_author(past):
                        continue
                    add(_author_id(past))
                    for user_id in mentioned_ids(past.content or ""):
                        add(user_id)
            except Exception as exc:
                log.warning("could not read history of %s: %s", message.channel.id, exc)
        return seen

    async def _find_wager(self, message) -> Optional[PendingWager]:
        for user_id in await self._collect_candidates(message):
            wager = self.tickets.peek_pending_wager(user_id)
            if wager is not None:
                return wager
        offer = extract_bet_offer(message.content or "")
        return self.tickets.correlate_pending_wager(
            getattr(message.channel, "name", ""),
            mentions=mentioned_ids(message.content or ""),
            bet=offer.opponent if offer else None,
        )

    async def latch(self, message) -> bool:
        """Link a fresh ticket channel to the pending wager it belongs to."""
        wager = await self._find_wager(message)
        if wager is None:
            log.debug("no pending wager matches channel %s", message.channel.id)
            return False

        try:
            balance = await self._adapter(wager.chain).get_balance()
        except RpcFatal as exc:
            log.error("balance precheck failed for ticket %s: %s", message.channel.id, exc)
            return False
        if balance < wager.our_bet:
            log.warning(
                "insufficient funds to take ticket %s: need %s %s, have %s",
                message.channel.id,
                wager.our_bet,
                wager.chain,
                balance,
            )
            await self._reply(message, self.settings.template("insufficient_funds"))
            return False

        if self.tickets.get_ticket_by_user(wager.opponent_id) is not None:
            log.warning("user %s already holds a live ticket; not latching %s", wager.opponent_id, message.channel.id)
            return False
        self.tickets.consume_pending_wager(wager.opponent_id)
        try:
            ticket = self.tickets.create_ticket(message.channel.id, wager.seed())
        except DuplicateTicket as exc:
            log.warning("latch refused: %s", exc)
            return False
        log.info(
            "latched ticket %s to %s (%s vs %s %s)",
            ticket.channel_id,
            wager.opponent_id,
            wager.opponent_bet,
            wager.our_bet,
            wager.chain,
        )
        try:
            ticket.transition(TicketState.AWAITING_MIDDLEMAN)
            if self._is_middleman(message):
                await self._on_awaiting_middleman(message, ticket)
            await self.persist()
        except LOCALLY_RECOVERED as exc:
            await self._recover_locally(message, ticket, exc)
        except (RpcFatal, RpcTransient, InvalidStateTransition, PersistenceError) as exc:
            await self.fail(ticket, exc)
        return True

    # -- per-state handlers ---------------------------------------------

    async def _on_awaiting_ticket(self, message, ticket: Ticket) -> bool:
        if _author_id(message) == ticket.data.opponent_id or self._is_middleman(message):
            ticket.transition(TicketState.AWAITING_MIDDLEMAN)
            if self._is_middleman(message):
                await self._on_awaiting_middleman(message, ticket)
            await self.persist()
            return True
        return False

    async def _on_awaiting_middleman(self, message, ticket: Ticket) -> bool:
        if not self._is_middleman(message):
            return False
        ticket.transition(TicketState.AWAITING_PAYMENT_ADDRESS, middleman_id=_author_id(message))
        await self.persist()
        log.info("middleman %s joined ticket %s", _author_id(message), ticket.channel_id)
        if find_crypto_addresses(
            message.content,
            ticket.data.chain,
            self.settings.address_patterns,
            checksum=self.settings.verify_address_checksums,
        ):
            return await self._on_payment_address(message, ticket)
        return True

    def _own_addresses(self, chain: str) -> Set[str]:
        own = set(self._adapter(chain).own_addresses())
        configured = self.settings.payout_addresses.get(chain)
        if configured:
            own.add(configured)
        return own

    async def _on_payment_address(self, message, ticket: Ticket) -> bool:
        if not self._is_middleman(message, ticket):
            return False
        chain = ticket.data.chain
        patterns = self.settings.address_patterns
        checksum = self.settings.verify_address_checksums
        own = self._own_addresses(chain)
        address = extract_crypto_address(message.content, chain, patterns, exclude=own, checksum=checksum)
        if address is None:
            if find_crypto_addresses(message.content, chain, patterns, checksum=checksum):
                raise SelfAddressRejected(f"only our own {chain} address was posted in {ticket.channel_id}")
            content = message.content or ""
            if len(content) > 20 or "address" in content.lower():
                raise InvalidAddress(f"no valid {chain} address in message")
            return False
        log.info("payment address received in %s: %s", ticket.channel_id, address)
        await self.send_payment(message, ticket, address)
        return True

    async def send_payment(self, message, ticket: Ticket, address: str) -> None:
        data = ticket.data
        chain = data.chain
        amount = quantize(data.our_bet or 0, chain)
        if amount <= 0:
            raise InvalidStateTransition(f"ticket {ticket.channel_id} has no stake to send")
        payment_id = self.idempotency.generate_payment_id(ticket.channel_id, address, amount, chain)

        permission = self.idempotency.can_send(payment_id)
        if not permission.can_send:
            raise DuplicatePayment(payment_id, permission.reason, permission.existing_tx_id)
        for record in self.idempotency.records_for_ticket(ticket.channel_id):
            if record.payment_id != payment_id and record.status.rank >= PaymentStatus.BROADCAST.rank:
                raise DuplicatePayment(record.payment_id, "ticket already paid", record.tx_id)

        settings = self.settings
        if settings.max_payment_per_tx is not None and amount > settings.max_payment_per_tx:
            raise PaymentLimitExceeded(f"{amount} {chain} exceeds per-payment cap {settings.max_payment_per_tx}")
        if settings.max_daily_spend is not None:
            spent = self.idempotency.daily_spend()
            if spent + amount > settings.max_daily_spend:
                raise PaymentLimitExceeded(
                    f"{amount} {chain} would take today's spend past {settings.max_daily_spend} (spent {spent})"
                )

        adapter = self._adapter(chain)
        balance = await adapter.get_balance()
        if balance < amount:
            raise InsufficientBalance(amount, balance)

        if not self.idempotency.record_intent(payment_id, address, amount, ticket.channel_id, chain):
            record = self.idempotency.get(payment_id)
            raise DuplicatePayment(payment_id, "intent already recorded", record.tx_id if record else None)
        await self.persist()

        try:
            result = await adapter.send_payment(address, amount)
        except (RpcTransient, RpcFatal) as exc:
            self.idempotency.record_error(payment_id, str(exc))
            raise RpcFatal(f"broadcast of {payment_id} failed: {exc}") from exc

        self.idempotency.record_broadcast(payment_id, result.tx_id)
        ticket.transition(
            TicketState.PAYMENT_SENT,
            recipient_address=address,
            send_tx_id=result.tx_id,
            payment_locked=True,
            payment_id=payment_id,
        )
        await self.persist()
        await self.outbox.send(
            message.channel,
            settings.template("payment_sent").format(
                amount=display_amount(amount, chain), chain=chain, txid=result.tx_id
            ),
        )

    async def _on_payment_sent(self, message, ticket: Ticket) -> bool:
        if not self._is_middleman(message, ticket):
            return False
        content = message.content or ""
        repeated = extract_crypto_address(content, ticket.data.chain, self.settings.address_patterns)
        if repeated and ticket.data.recipient_address and canonical_address(
            repeated, ticket.data.chain
        ) == canonical_address(ticket.data.recipient_address, ticket.data.chain):
            log.warning("address repeated in %s after payment %s; ignoring", ticket.channel_id, ticket.data.send_tx_id)
            return False
        if not (is_payment_confirmation(content) or is_game_start(content)):
            return False

        payment_id = ticket.data.payment_id
        record = self.idempotency.get(payment_id) if payment_id else None
        if record is not None and record.status is PaymentStatus.BROADCAST:
            self.idempotency.record_confirmed(payment_id)
        ticket.transition(TicketState.AWAITING_GAME_START)
        await self.persist()
        log.info("payment for %s confirmed by middleman", ticket.channel_id)
        if is_game_start(content):
            return await self._on_awaiting_game_start(message, ticket)
        return True

    async def _on_awaiting_game_start(self, message, ticket: Ticket) -> bool:
        if not self._is_middleman(message, ticket) or not is_game_start(message.content):
            return False
        tracker = ScoreTracker(self.settings.target_wins, bot_wins_ties=self.settings.bot_wins_ties)
        self._trackers[ticket.channel_id] = tracker
        first = bool(self.bot_id) and bot_goes_first(message.content, self.bot_id, self.bot_names)
        ticket.transition(
            TicketState.GAME_IN_PROGRESS,
            game_scores=dict(tracker.scores),
            game_rounds=[],
            bot_goes_first=first,
        )
        await self.persist()
        log.info("game started in %s (bot first: %s)", ticket.channel_id, first)
        if first:
            await self.roll(message.channel, ticket)
        return True

    # -- game -----------------------------------------------------------

    def tracker_for(self, ticket: Ticket) -> ScoreTracker:
        tracker = self._trackers.get(ticket.channel_id)
        if tracker is None:
            tracker = ScoreTracker.from_dict(
                {
                    "scores": ticket.data.game_scores or {},
                    "rounds": ticket.data.game_rounds,
                    "botWinsTies": self.settings.bot_wins_ties,
                },
                target=self.settings.target_wins,
            )
            self._trackers[ticket.channel_id] = tracker
            log.info("score tracker rebuilt for %s at %s", ticket.channel_id, tracker.formatted_score())
        return tracker

    def attribute_roll(self, message, ticket: Ticket, tracker: ScoreTracker) -> Optional[str]:
        author = _author_id(message)
        if author == self.bot_id:
            return BOT
        if author == ticket.data.opponent_id:
            return OPPONENT
        if not _is_bot_author(message):
            return None
        targets = roll_targets(message)
        if self.bot_id and self.bot_id in targets:
            return BOT
        if ticket.data.opponent_id and ticket.data.opponent_id in targets:
            return OPPONENT
        # nothing identifies the roller: the first unpaired roll is the opponent's
        if tracker.has_pending(OPPONENT) and not tracker.has_pending(BOT):
            return BOT
        return OPPONENT

    async def roll(self, channel, ticket: Ticket) -> None:
        await self.outbox.send(channel, self.settings.dice_command)
        log.info("rolled in %s", ticket.channel_id)

    async def _on_game_message(self, message, ticket: Ticket) -> bool:
        tracker = self.tracker_for(ticket)
        value = extract_dice_result(message.content)
        if value is not None:
            side = self.attribute_roll(message, ticket, tracker)
            if side is None:
                log.debug("dice text from %s in %s not attributed", _author_id(message), ticket.channel_id)
                return False
            result = tracker.offer_roll(side, value)
            log.info("%s rolled %d in %s", side, value, ticket.channel_id)
            if result is None:
                if side == OPPONENT and tracker.awaiting(BOT):
                    await self.roll(message.channel, ticket)
                return True
            ticket.update_data(game_scores=dict(tracker.scores), game_rounds=[list(r) for r in tracker.rounds])
            await self.persist()
            if result.game_over:
                await self._finish_game(message.channel, ticket, tracker)
            elif ticket.data.bot_goes_first:
                await self.roll(message.channel, ticket)
            return True

        if self._is_middleman(message, ticket):
            content = message.content or ""
            addressed = bool(self.bot_id) and self.bot_id in mentioned_ids(content)
            if (is_roll_request(content) or addressed) and not tracker.has_pending(BOT):
                await self.roll(message.channel, ticket)
                return True
        return False

    async def _finish_game(self, channel, ticket: Ticket, tracker: ScoreTracker) -> None:
        self._trackers.pop(ticket.channel_id, None)
        data = ticket.data
        if tracker.did_bot_win():
            ticket.transition(TicketState.AWAITING_PAYOUT, game_winner=BOT)
            await self.persist()
            log.info("bot won %s %s; awaiting payout of %s %s", ticket.channel_id, tracker.formatted_score(), data.pot, data.chain)
            address = await self._adapter(data.chain).get_payout_address()
            await self.outbox.send(
                channel,
                self.settings.template("payout_request").format(amount=display_amount(data.pot, data.chain), chain=data.chain),
            )
            if address:
                await self.outbox.send(channel, f"`{address}`")
            else:
                await self.notifier.alert(f"ticket {ticket.channel_id} won but no {data.chain} payout address is configured")
        else:
            ticket.transition(TicketState.GAME_COMPLETE, game_winner=OPPONENT)
            await self.persist()
            log.info("bot lost %s %s", ticket.channel_id, tracker.formatted_score())
            await self.outbox.send(channel, self.settings.template("game_lost"))
            self.tickets.schedule_removal(ticket.channel_id, self.settings.payout_grace_ms / 1000.0)

    # -- cancellation / failure -----------------------------------------

    async def _cancel(self, message, ticket: Ticket) -> None:
        paid = ticket.data.payment_locked
        ticket.transition(TicketState.CANCELLED)
        self._trackers.pop(ticket.channel_id, None)
        await self.persist()
        log.warning("ticket %s cancelled by %s", ticket.channel_id, _author_id(message))
        await self.outbox.send(message.channel, self.settings.template("cancelled"))
        if paid:
            await self.notifier.alert(
                f"ticket {ticket.channel_id} cancelled after payment {ticket.data.send_tx_id}; check the refund"
            )
        self.tickets.schedule_removal(ticket.channel_id, self.settings.payout_grace_ms / 1000.0)

    async def _recover_locally(self, message, ticket: Optional[Ticket], exc: Exception) -> None:
        where = ticket.channel_id if ticket else message.channel.id
        log.warning("ticket %s: %s", where, exc)
        if isinstance(exc, DuplicatePayment):
            if exc.tx_id:
                await self._reply(message, f"Payment already sent. TX: {exc.tx_id}")
            else:
                await self.notifier.alert(f"payment {exc.payment_id} in {where} has an unresolved intent")
        elif isinstance(exc, (InsufficientBalance, PaymentLimitExceeded)):
            await self._reply(message, self.settings.template("insufficient_funds"))
            if isinstance(exc, PaymentLimitExceeded):
                await self.notifier.alert(f"spend cap hit in {where}: {exc}")
        elif isinstance(exc, SelfAddressRejected):
            await self._reply(message, "That address is mine. Please post the middleman address.")
        elif isinstance(exc, InvalidAddress):
            chain = ticket.data.chain if ticket else self.settings.chain
            await self._reply(message, f"I couldn't find a valid {chain} address. Please paste only the address.")

    async def fail(self, ticket: Ticket, exc: Exception) -> None:
        log.error("ticket %s failed in %s: %s", ticket.channel_id, ticket.state.value, exc)
        self._trackers.pop(ticket.channel_id, None)
        if ticket.active:
            ticket.transition(TicketState.ERROR, error_reason=str(exc)[:500])
        try:
            await self.persist()
        except PersistenceError:
            log.exception("could not persist ERROR state of %s", ticket.channel_id)
        await self.notifier.alert(f"ticket {ticket.channel_id} moved to ERROR: {exc}")

    # -- platform events ------------------------------------------------

    async def handle_edit(self, before, after) -> bool:
        ticket = self.tickets.get_ticket(after.channel.id)
        if ticket is None:
            return False
        chain = ticket.data.chain
        patterns = self.settings.address_patterns
        old_addr = extract_crypto_address(before.content or "", chain, patterns)
        new_addr = extract_crypto_address(after.content or "", chain, patterns)
        old_roll = extract_dice_result(before.content or "")
        new_roll = extract_dice_result(after.content or "")
        flagged = False
        if old_addr and old_addr != new_addr:
            log.error("address edited in ticket %s: %s -> %s", ticket.channel_id, old_addr, new_addr)
            await self.outbox.send(after.channel, "Warning: an address in this ticket was edited. The operator has been notified.")
            flagged = True
        if old_roll is not None and new_roll is not None and old_roll != new_roll:
            log.error("dice result edited in ticket %s: %s -> %s", ticket.channel_id, old_roll, new_roll)
            await self.outbox.send(after.channel, "Warning: a dice result in this ticket was edited.")
            flagged = True
        if flagged:
            await self.notifier.alert(f"message edited in ticket {ticket.channel_id} ({ticket.state.value})")
        else:
            log.warning("message edited in ticket %s", ticket.channel_id)
        return flagged

    async def handle_channel_delete(self, channel_id) -> bool:
        ticket = self.tickets.remove_ticket(channel_id)
        if ticket is None:
            return False
        self._trackers.pop(ticket.channel_id, None)
        log.warning("ticket channel %s deleted in state %s; purged", ticket.channel_id, ticket.state.value)
        if ticket.state in (TicketState.PAYMENT_SENT, TicketState.AWAITING_GAME_START, TicketState.GAME_IN_PROGRESS, TicketState.AWAITING_PAYOUT):
            await self.notifier.alert(f"ticket channel {ticket.channel_id} deleted while {ticket.state.value}")
        await self.persist()
        return True
