"""Shared fixtures: in-memory chat objects and a fake wallet."""

import itertools
from decimal import Decimal
from typing import List, Optional

import pytest

from sniper.chains import ChainAdapter, ChainTransaction, SendResult
from sniper.config import settings_from_mapping
from sniper.engine import Engine
from sniper.errors import RpcFatal
from sniper.state import TicketState

BOT_ID = "999"
MM_ID = "111"
OPP_ID = "501"
PUBLIC_CHANNEL_ID = "222"
VOUCH_CHANNEL_ID = "333"
OPERATOR_CHANNEL_ID = "444"

OUR_LTC_ADDRESS = "LTpYZG19YmfvY2bBDYtCKpunVRw7nVgRHW"
MM_LTC_ADDRESS = "LY7VX5yZgVbEsL3kS9F2a8B4c5D6e7F8g9"

_ids = itertools.count(10_000)


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeUser:
    def __init__(self, user_id: str, *, bot: bool = False, name: str = "user"):
        self.id = user_id
        self.bot = bot
        self.name = name
        self.display_name = name


class FakeMessage:
    def __init__(self, channel, author: FakeUser, content: str, *, reference=None):
        self.id = str(next(_ids))
        self.channel = channel
        self.author = author
        self.content = content
        self.mentions: List[FakeUser] = []
        self.reference = reference
        self.guild = channel.guild

    async def reply(self, content: str):
        return await self.channel.send(content, reply_to=self)


class FakeChannel:
    def __init__(self, channel_id: str, name: str = "general", *, guild=True):
        self.id = channel_id
        self.name = name
        self.guild = object() if guild else None
        self.messages: List[FakeMessage] = []
        self.sent: List[str] = []
        self.replies: List[str] = []

    async def send(self, content: str, reply_to=None):
        self.sent.append(content)
        if reply_to is not None:
            self.replies.append(content)
        message = FakeMessage(self, FakeUser(BOT_ID, bot=True, name="sniper"), content)
        self.messages.append(message)
        return message

    def post(self, author: FakeUser, content: str, **kwargs) -> FakeMessage:
        message = FakeMessage(self, author, content, **kwargs)
        self.messages.append(message)
        return message

    def history(self, limit: int = 100):
        async def _iter():
            for message in list(reversed(self.messages))[:limit]:
                yield message

        return _iter()


class FakeClient:
    def __init__(self, *channels: FakeChannel):
        self.user = FakeUser(BOT_ID, bot=True, name="sniper")
        self._channels = {c.id: c for c in channels}

    def get_channel(self, channel_id):
        return self._channels.get(str(channel_id))

    async def fetch_channel(self, channel_id):
        return self._channels[str(channel_id)]


class FakeChain(ChainAdapter):
    chain = "LTC"

    def __init__(self, balance: str = "100", *, payout_address: Optional[str] = OUR_LTC_ADDRESS):
        super().__init__(payout_address=payout_address, retries=0, backoff_s=0)
        self.balance = Decimal(balance)
        self.transactions: List[ChainTransaction] = []
        self.send_calls: List[tuple] = []
        self.fail_send: Optional[Exception] = None

    async def get_balance(self) -> Decimal:
        return self.balance

    async def send_payment(self, address: str, amount: Decimal) -> SendResult:
        self.send_calls.append((address, amount))
        if self.fail_send is not None:
            raise self.fail_send
        self.balance -= amount
        return SendResult(tx_id=f"tx{len(self.send_calls)}")

    async def get_recent_transactions(self, limit: int = 25) -> List[ChainTransaction]:
        return list(self.transactions)[:limit]


class BrokenChain(FakeChain):
    async def get_balance(self) -> Decimal:
        raise RpcFatal("node unreachable")


def base_config(tmp_path, **overrides) -> dict:
    raw = {
        "chain": "LTC",
        "middleman_ids": [MM_ID],
        "channels": {
            "monitored_public_ids": [PUBLIC_CHANNEL_ID],
            "vouch_channel_id": VOUCH_CHANNEL_ID,
            "operator_channel_id": OPERATOR_CHANNEL_ID,
        },
        "payout_addresses": {"LTC": OUR_LTC_ADDRESS},
        "persistence": {"path": str(tmp_path / "state.json"), "debounce_ms": 10},
        "lock_timeout_ms": 2000,
    }
    raw.update(overrides)
    return raw


def advance_to(ticket, target: TicketState, *, bot_won: bool = True) -> None:
    """Walk a fresh ticket along the legal edges up to ``target``."""
    steps = [
        (TicketState.AWAITING_MIDDLEMAN, {}),
        (TicketState.AWAITING_PAYMENT_ADDRESS, {"middleman_id": MM_ID}),
        (
            TicketState.PAYMENT_SENT,
            {"recipient_address": MM_LTC_ADDRESS, "send_tx_id": "tx-seed", "payment_locked": True},
        ),
        (TicketState.AWAITING_GAME_START, {}),
        (TicketState.GAME_IN_PROGRESS, {"game_scores": {"bot": 0, "opponent": 0}}),
        (TicketState.AWAITING_PAYOUT, {"game_winner": "bot", "game_scores": {"bot": 5, "opponent": 0}}),
    ]
    for state, patch in steps:
        ticket.transition(state, **patch)
        if state is target:
            return
    raise AssertionError(f"cannot reach {target}")


@pytest.fixture
def settings(tmp_path):
    return settings_from_mapping(base_config(tmp_path), env={})


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def public_channel():
    return FakeChannel(PUBLIC_CHANNEL_ID, "dice-bets")


@pytest.fixture
def ticket_channel():
    return FakeChannel("700", "ticket-0001")


@pytest.fixture
def opponent():
    return FakeUser(OPP_ID, name="highroller")


@pytest.fixture
def middleman():
    return FakeUser(MM_ID, name="trusted-mm")


@pytest.fixture
def bot_user():
    return FakeUser(BOT_ID, bot=True, name="sniper")


@pytest.fixture
async def engine(settings, chain):
    eng = Engine(settings, adapters={"LTC": chain})
    await eng.start()
    eng.flow.bind_identity(BOT_ID, ["sniper"])
    yield eng
    await eng.stop()


async def deliver(engine, channel: FakeChannel, author: FakeUser, content: str, **kwargs):
    """Post ``content`` to ``channel`` and route it through the engine."""
    message = channel.post(author, content, **kwargs)
    return await engine.handle_message(message)
