"""Tests for the ticket state machine."""

from decimal import Decimal

import pytest

from sniper.errors import InvalidStateTransition
from sniper.state import Ticket, TicketState, allowed_transitions, can_transition

from .conftest import MM_ID, MM_LTC_ADDRESS, advance_to


def _ticket():
    ticket = Ticket("700")
    ticket.data.apply({"opponent_id": "501", "opponent_bet": "10", "our_bet": "11", "chain": "LTC"})
    return ticket


class TestTransitions:
    def test_linear_path(self):
        ticket = _ticket()
        advance_to(ticket, TicketState.AWAITING_PAYOUT)
        ticket.transition(TicketState.GAME_COMPLETE, payout_tx_id="payout-1")
        assert ticket.state is TicketState.GAME_COMPLETE
        assert not ticket.active
        assert [h["to"] for h in ticket.history][-2:] == ["AWAITING_PAYOUT", "GAME_COMPLETE"]

    def test_skipping_states_rejected(self):
        ticket = _ticket()
        with pytest.raises(InvalidStateTransition):
            ticket.transition(TicketState.PAYMENT_SENT, recipient_address=MM_LTC_ADDRESS)
        assert ticket.state is TicketState.AWAITING_TICKET

    def test_cancel_and_error_from_any_live_state(self):
        for state in TicketState:
            if state.terminal:
                assert allowed_transitions(state) == frozenset()
                continue
            assert can_transition(state, TicketState.CANCELLED)
            assert can_transition(state, TicketState.ERROR)

    def test_terminal_states_are_final(self):
        ticket = _ticket()
        ticket.transition(TicketState.CANCELLED)
        with pytest.raises(InvalidStateTransition):
            ticket.transition(TicketState.AWAITING_MIDDLEMAN)

    def test_game_in_progress_can_end_without_payout(self):
        assert can_transition(TicketState.GAME_IN_PROGRESS, TicketState.GAME_COMPLETE)


class TestRequiredFields:
    """Each state carries the data its handlers rely on."""

    def test_payment_sent_needs_lock_and_tx(self):
        ticket = _ticket()
        advance_to(ticket, TicketState.AWAITING_PAYMENT_ADDRESS)
        with pytest.raises(InvalidStateTransition):
            ticket.transition(TicketState.PAYMENT_SENT, recipient_address=MM_LTC_ADDRESS, send_tx_id="tx1")
        assert ticket.state is TicketState.AWAITING_PAYMENT_ADDRESS
        assert ticket.data.recipient_address is None

    def test_middleman_required(self):
        ticket = _ticket()
        ticket.transition(TicketState.AWAITING_MIDDLEMAN)
        with pytest.raises(InvalidStateTransition):
            ticket.transition(TicketState.AWAITING_PAYMENT_ADDRESS)

    def test_payout_requires_bot_win(self):
        ticket = _ticket()
        advance_to(ticket, TicketState.GAME_IN_PROGRESS)
        with pytest.raises(InvalidStateTransition):
            ticket.transition(TicketState.AWAITING_PAYOUT, game_winner="opponent")

    def test_unknown_fields_rejected(self):
        ticket = _ticket()
        with pytest.raises(InvalidStateTransition):
            ticket.transition(TicketState.AWAITING_MIDDLEMAN, favourite_colour="blue")
        assert ticket.state is TicketState.AWAITING_TICKET

    def test_update_data_keeps_requirements(self):
        ticket = _ticket()
        advance_to(ticket, TicketState.PAYMENT_SENT)
        with pytest.raises(InvalidStateTransition):
            ticket.update_data(payment_locked=False)
        assert ticket.data.payment_locked is True


class TestTicketData:
    def test_pot(self):
        assert _ticket().data.pot == Decimal("21")

    def test_round_trip_keeps_decimals(self):
        ticket = _ticket()
        advance_to(ticket, TicketState.AWAITING_PAYMENT_ADDRESS)
        restored = Ticket.from_dict(ticket.to_dict())
        assert restored.state is TicketState.AWAITING_PAYMENT_ADDRESS
        assert restored.data.our_bet == Decimal("11")
        assert restored.data.middleman_id == MM_ID

    def test_restore_rejects_inconsistent_record(self):
        record = _ticket().to_dict()
        record["state"] = "PAYMENT_SENT"
        with pytest.raises(InvalidStateTransition):
            Ticket.from_dict(record)

    def test_change_callback(self):
        seen = []
        ticket = Ticket("700", on_change=seen.append)
        ticket.transition(TicketState.AWAITING_MIDDLEMAN)
        assert seen == [ticket]
