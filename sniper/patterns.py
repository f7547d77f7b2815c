import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional

# "10v10", "10vs10", "15.5 vs 15.5", "$10 v $10"
BET_PATTERN = re.compile(
    r"(?<![\w.])\$?(\d+(?:\.\d{1,2})?)\s*(?:v|vs)\s*\$?(\d+(?:\.\d{1,2})?)(?![\w.]*\d)",
    re.IGNORECASE,
)

# dice bot output: "rolled a 6", "🎲 6", "[6]"
DICE_RESULT_PATTERN = re.compile(r"(?:\brolled?\s*(?:an?\s*)?|🎲\s*|\[\s*)([1-6])(?!\d)(?:\s*\])?", re.IGNORECASE)

GAME_START_PATTERNS = [
    re.compile(r"\bgl\b", re.IGNORECASE),
    re.compile(r"\bgood\s*luck\b", re.IGNORECASE),
    re.compile(r"\bboth\s*(?:paid|sent|received)\b", re.IGNORECASE),
    re.compile(r"\bstart(?:ing)?\b", re.IGNORECASE),
    re.compile(r"\bft\s*\d+\b", re.IGNORECASE),
    re.compile(r"\bfirst\b", re.IGNORECASE),
]

PAYMENT_CONFIRM_PATTERNS = [
    re.compile(r"\bconfirm(?:ed)?\b", re.IGNORECASE),
    re.compile(r"\breceived?\b", re.IGNORECASE),
    re.compile(r"\bgot\s*(?:it|payment|both)\b", re.IGNORECASE),
    re.compile(r"\bpaid\b", re.IGNORECASE),
    re.compile(r"\bboth\s*(?:paid|sent|received)\b", re.IGNORECASE),
    re.compile(r"\bgl\b", re.IGNORECASE),
    re.compile(r"\bgood\s*luck\b", re.IGNORECASE),
]

FIRST_PLAYER_PATTERN = re.compile(r"(?:<@!?(\d+)>|\b(\w+)\b)\s*(?:goes\s*|go\s*|rolls?\s*)?first\b", re.IGNORECASE)

ROLL_REQUEST_PATTERN = re.compile(r"\b(?:roll|your\s*turn)\b", re.IGNORECASE)

MENTION_PATTERN = re.compile(r"<@!?(\d+)>")


@dataclass(frozen=True)
class BetOffer:
    opponent: Decimal
    other: Decimal


def extract_bet_offer(text: str) -> Optional[BetOffer]:
    if not text:
        return None
    match = BET_PATTERN.search(text)
    if not match:
        return None
    return BetOffer(opponent=Decimal(match.group(1)), other=Decimal(match.group(2)))


def extract_dice_result(text: str) -> Optional[int]:
    if not text:
        return None
    match = DICE_RESULT_PATTERN.search(text)
    return int(match.group(1)) if match else None


def is_game_start(text: str) -> bool:
    return bool(text) and any(p.search(text) for p in GAME_START_PATTERNS)


def is_payment_confirmation(text: str) -> bool:
    return bool(text) and any(p.search(text) for p in PAYMENT_CONFIRM_PATTERNS)


def is_roll_request(text: str) -> bool:
    return bool(text) and ROLL_REQUEST_PATTERN.search(text) is not None


def is_cancellation(text: str, keywords: Iterable[str]) -> bool:
    if not text:
        return False
    lowered = text.lower()
    return any(re.search(rf"\b{re.escape(k.lower())}\b", lowered) for k in keywords if k)


def mentioned_ids(text: str) -> list:
    return MENTION_PATTERN.findall(text or "")


def bot_goes_first(text: str, bot_id: str, bot_names: Iterable[str] = ()) -> bool:
    """True when a game-start message names the bot as first roller."""
    if not text:
        return False
    names = {"you", "bot"} | {n.lower() for n in bot_names if n}
    for match in FIRST_PLAYER_PATTERN.finditer(text):
        user_id, word = match.group(1), match.group(2)
        if user_id and user_id == str(bot_id):
            return True
        if word and word.lower() in names:
            return True
    return False
