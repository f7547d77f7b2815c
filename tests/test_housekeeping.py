"""Tests for the periodic sweep of idle tickets, wagers and cooldowns."""

import asyncio
import dataclasses
import json
import time
from decimal import Decimal

import pytest

from sniper.engine import Engine
from sniper.state import TicketState

from .conftest import (
    BOT_ID,
    MM_LTC_ADDRESS,
    OPERATOR_CHANNEL_ID,
    OPP_ID,
    FakeChannel,
    FakeClient,
    FakeClock,
    FakeUser,
    advance_to,
    deliver,
)

HOUR = 3600
DAY = 24 * HOUR


def _seed(opponent_id=OPP_ID):
    return {"opponent_id": opponent_id, "opponent_bet": "10", "our_bet": "11", "chain": "LTC"}


@pytest.fixture
def clock():
    return FakeClock(time.time())


@pytest.fixture
def operator():
    return FakeChannel(OPERATOR_CHANNEL_ID, "ops")


@pytest.fixture
async def engine(settings, chain, clock, operator):
    eng = Engine(settings, adapters={"LTC": chain}, clock=clock)
    await eng.start()
    eng.flow.bind_identity(BOT_ID, ["sniper"])
    eng.notifier.bind(FakeClient(operator))
    yield eng
    await eng.stop()


class TestStaleTickets:
    """Tickets that stop moving before any money is sent get cancelled."""

    async def test_idle_ticket_frees_the_opponent(
        self, engine, clock, public_channel, ticket_channel, opponent
    ):
        await deliver(engine, public_channel, opponent, "10v10")
        await deliver(engine, ticket_channel, opponent, "hey, here for the 10v10")
        ticket = engine.tickets.get_ticket(ticket_channel.id)
        assert ticket.state is TicketState.AWAITING_MIDDLEMAN

        clock.advance(DAY)
        report = await engine.housekeeper.sweep_once()
        assert report.cancelled == [ticket_channel.id]
        assert ticket.state is TicketState.CANCELLED

        await deliver(engine, public_channel, opponent, "20v20 anyone")
        assert public_channel.replies[-1] == "vs 22.00"

    async def test_recent_ticket_left_alone(self, engine, clock):
        ticket = engine.tickets.create_ticket("700", _seed())
        advance_to(ticket, TicketState.AWAITING_MIDDLEMAN)
        clock.advance(HOUR / 2)
        report = await engine.housekeeper.sweep_once()
        assert report.cancelled == []
        assert ticket.state is TicketState.AWAITING_MIDDLEMAN

    async def test_ticket_with_payment_record_not_cancelled(self, engine, clock):
        ticket = engine.tickets.create_ticket("700", _seed())
        advance_to(ticket, TicketState.AWAITING_PAYMENT_ADDRESS)
        payment_id = engine.idempotency.generate_payment_id("700", MM_LTC_ADDRESS, Decimal("11"), "LTC")
        engine.idempotency.record_intent(payment_id, MM_LTC_ADDRESS, Decimal("11"), "700", "LTC")
        clock.advance(DAY)
        report = await engine.housekeeper.sweep_once()
        assert report.cancelled == []
        assert ticket.state is TicketState.AWAITING_PAYMENT_ADDRESS

    async def test_in_flight_ticket_alerts_once(self, engine, clock, operator):
        ticket = engine.tickets.create_ticket("700", _seed())
        advance_to(ticket, TicketState.PAYMENT_SENT)
        clock.advance(2 * HOUR)
        first = await engine.housekeeper.sweep_once()
        await engine.housekeeper.sweep_once()
        assert first.in_flight == ["700"]
        assert ticket.state is TicketState.PAYMENT_SENT
        assert len(operator.sent) == 1
        assert operator.sent[0].startswith("[sniper] ticket 700 stuck in PAYMENT_SENT")

    async def test_background_loop_cancels(self, settings, chain, clock):
        fast = dataclasses.replace(settings, housekeeping_interval_ms=10)
        eng = Engine(fast, adapters={"LTC": chain}, clock=clock)
        await eng.start()
        ticket = eng.tickets.create_ticket("700", _seed())
        clock.advance(DAY)
        eng.housekeeper.start()
        try:
            for _ in range(50):
                if ticket.state is TicketState.CANCELLED:
                    break
                await asyncio.sleep(0.01)
        finally:
            await eng.stop()
        assert not eng.housekeeper.running
        assert ticket.state is TicketState.CANCELLED


class TestRetention:
    async def test_finished_tickets_removed_after_a_day(self, engine, clock):
        done = engine.tickets.create_ticket("700", _seed())
        done.transition(TicketState.CANCELLED)
        clock.advance(DAY + 1)
        report = await engine.housekeeper.sweep_once()
        assert report.removed == ["700"]
        assert engine.tickets.get_ticket("700") is None

    async def test_error_tickets_kept_for_a_week(self, engine, clock, operator):
        broken = engine.tickets.create_ticket("700", _seed())
        broken.transition(TicketState.ERROR, error_reason="broadcast failed")
        clock.advance(2 * DAY)
        await engine.housekeeper.sweep_once()
        assert engine.tickets.get_ticket("700") is broken

        clock.advance(7 * DAY)
        report = await engine.housekeeper.sweep_once()
        assert report.removed == ["700"]
        assert operator.sent == ["[sniper] ticket 700 dropped after sitting in ERROR: broadcast failed"]


class TestExpiry:
    """Expired wagers and cooldowns leave memory and the snapshot."""

    async def test_wagers_and_cooldowns_purged(self, engine, clock, public_channel):
        for n in range(50):
            await deliver(engine, public_channel, FakeUser(str(600 + n), name=f"p{n}"), "5v5")
        assert len(engine.tickets.pending_wagers) == 50

        clock.advance(7 * DAY)
        report = await engine.housekeeper.sweep_once()
        assert report.wagers == 50
        assert report.cooldowns == 50
        assert engine.tickets.pending_wagers == {}
        assert engine.tickets.cooldowns == {}

        await engine.snapshots.flush()
        saved = json.loads(engine.snapshots.path.read_text(encoding="utf-8"))
        assert saved["pendingWagers"] == []

    async def test_live_wager_survives(self, engine, clock, public_channel, opponent):
        await deliver(engine, public_channel, opponent, "10v10")
        clock.advance(60)
        report = await engine.housekeeper.sweep_once()
        assert report.wagers == 0
        assert engine.tickets.peek_pending_wager(OPP_ID) is not None
