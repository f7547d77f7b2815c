"""End-to-end tests through the engine: full ticket lifecycle and restarts."""

import json
import time
from decimal import Decimal

from sniper.chains import ChainTransaction
from sniper.engine import Engine
from sniper.idempotency import PaymentStatus
from sniper.state import TicketState

from .conftest import (
    BOT_ID,
    MM_LTC_ADDRESS,
    OPERATOR_CHANNEL_ID,
    OPP_ID,
    OUR_LTC_ADDRESS,
    FakeChannel,
    FakeClient,
    advance_to,
    deliver,
)


def _seed():
    return {"opponent_id": OPP_ID, "opponent_bet": "10", "our_bet": "11", "chain": "LTC"}


class TestLifecycle:
    async def test_offer_to_payout(
        self, engine, chain, public_channel, ticket_channel, opponent, middleman, bot_user
    ):
        """Snipe, latch, pay, play 5-0 and receive the pot."""
        assert await deliver(engine, public_channel, opponent, "anyone 10v10?") == "public"
        assert public_channel.replies == ["vs 11.00"]

        await deliver(engine, ticket_channel, opponent, "hey, here for the 10v10")
        ticket = engine.tickets.get_ticket(ticket_channel.id)
        assert ticket.state is TicketState.AWAITING_MIDDLEMAN

        await deliver(engine, ticket_channel, middleman, f"send to {MM_LTC_ADDRESS}")
        assert chain.send_calls == [(MM_LTC_ADDRESS, Decimal("11.00000000"))]
        assert ticket.state is TicketState.PAYMENT_SENT

        await deliver(engine, ticket_channel, middleman, "both paid, gl!")
        assert ticket.state is TicketState.GAME_IN_PROGRESS

        for bot_roll, opp_roll in [(6, 3), (5, 5), (4, 2), (6, 1), (6, 4)]:
            await deliver(engine, ticket_channel, opponent, f"🎲 {opp_roll}")
            await deliver(engine, ticket_channel, bot_user, f"🎲 {bot_roll}")
        assert ticket.state is TicketState.AWAITING_PAYOUT
        assert ticket.data.game_scores == {"bot": 5, "opponent": 0}
        assert ticket_channel.sent.count("!roll") == 5
        assert ticket_channel.sent[-1] == f"`{OUR_LTC_ADDRESS}`"

        chain.transactions = [ChainTransaction("payout-1", Decimal("21"), 1, time.time())]
        assert await engine.payouts.scan_once() == 1
        assert ticket.state is TicketState.GAME_COMPLETE
        assert ticket.data.payout_tx_id == "payout-1"

        await engine.snapshots.flush()
        saved = json.loads(engine.snapshots.path.read_text(encoding="utf-8"))
        assert saved["tickets"][0]["state"] == "GAME_COMPLETE"
        assert saved["idempotency"][0]["status"] == PaymentStatus.CONFIRMED.value

    async def test_messages_dropped_before_start(self, settings, chain, public_channel, opponent):
        engine = Engine(settings, adapters={"LTC": chain})
        assert await deliver(engine, public_channel, opponent, "10v10") is None
        assert public_channel.sent == []

    async def test_attach_binds_identity_and_alerts(self, settings, chain):
        operator = FakeChannel(OPERATOR_CHANNEL_ID, "ops")
        engine = Engine(settings, adapters={"LTC": chain})
        await engine.start()
        engine._pending_alerts = ["ticket 700: check me"]
        await engine.attach(FakeClient(operator))
        try:
            assert engine.flow.bot_id == BOT_ID
            assert engine.payouts.running
            assert operator.sent == ["[sniper] ticket 700: check me"]
        finally:
            await engine.stop()


class TestRestart:
    """State survives a restart and half-finished payments are reconciled."""

    async def _first_run(self, settings, chain, *, broadcast: bool):
        first = Engine(settings, adapters={"LTC": chain})
        await first.start()
        ticket = first.tickets.create_ticket("700", _seed())
        advance_to(ticket, TicketState.AWAITING_PAYMENT_ADDRESS)
        payment_id = first.idempotency.generate_payment_id("700", MM_LTC_ADDRESS, Decimal("11"), "LTC")
        first.idempotency.record_intent(payment_id, MM_LTC_ADDRESS, Decimal("11"), "700", "LTC")
        if broadcast:
            first.idempotency.record_broadcast(payment_id, "tx-before-crash")
        await first.stop()
        return payment_id

    async def test_unbroadcast_intent_moves_to_error(self, settings, chain):
        payment_id = await self._first_run(settings, chain, broadcast=False)
        second = Engine(settings, adapters={"LTC": chain})
        await second.start()
        try:
            ticket = second.tickets.get_ticket("700")
            assert ticket.state is TicketState.ERROR
            assert payment_id in ticket.data.error_reason
            assert len(second._pending_alerts) == 1
            assert second.idempotency.get(payment_id).status is PaymentStatus.INTENT
        finally:
            await second.stop()

    async def test_broadcast_payment_recovered(self, settings, chain):
        payment_id = await self._first_run(settings, chain, broadcast=True)
        second = Engine(settings, adapters={"LTC": chain})
        await second.start()
        try:
            ticket = second.tickets.get_ticket("700")
            assert ticket.state is TicketState.PAYMENT_SENT
            assert ticket.data.send_tx_id == "tx-before-crash"
            assert ticket.data.payment_id == payment_id
            assert not second.idempotency.can_send(payment_id).can_send
            assert chain.send_calls == []
        finally:
            await second.stop()

    async def test_pending_wager_restored(self, settings, chain, public_channel, opponent):
        first = Engine(settings, adapters={"LTC": chain})
        await first.start()
        await deliver(first, public_channel, opponent, "10v10")
        await first.stop()

        second = Engine(settings, adapters={"LTC": chain})
        await second.start()
        try:
            assert second.tickets.peek_pending_wager(OPP_ID).our_bet == Decimal("11.00000000")
        finally:
            await second.stop()

    async def test_bad_records_quarantined(self, settings, chain):
        settings.state_path.parent.mkdir(parents=True, exist_ok=True)
        settings.state_path.write_text(
            json.dumps(
                {
                    "schemaVersion": 1,
                    "tickets": [{"channelId": "700", "state": "PAYMENT_SENT", "data": {}}],
                    "pendingWagers": [],
                    "idempotency": [{"paymentId": "broken"}],
                }
            ),
            encoding="utf-8",
        )
        engine = Engine(settings, adapters={"LTC": chain})
        await engine.start()
        try:
            assert engine.tickets.tickets == {}
            quarantined = json.loads(engine.snapshots.quarantine_path.read_text(encoding="utf-8"))
            assert sorted(r["kind"] for r in quarantined) == ["payment", "ticket"]
        finally:
            await engine.stop()


class TestOutboxPruning:
    """Channels that go away stop holding send-spacing entries."""

    async def test_removed_ticket_forgotten(self, engine, ticket_channel):
        engine.tickets.create_ticket(ticket_channel.id, _seed())
        await engine.outbox.send(ticket_channel, "hello")
        assert len(engine.outbox) == 1
        engine.tickets.remove_ticket(ticket_channel.id)
        assert len(engine.outbox) == 0

    async def test_deleted_channel_forgotten(self, engine, ticket_channel, public_channel, opponent):
        await deliver(engine, public_channel, opponent, "10v10")
        engine.tickets.create_ticket(ticket_channel.id, {"opponent_id": "502", "our_bet": "11"})
        await engine.outbox.send(ticket_channel, "hello")
        assert len(engine.outbox) == 2

        assert await engine.handle_channel_delete(ticket_channel)
        assert await engine.handle_channel_delete(public_channel) is False
        assert len(engine.outbox) == 0
