import logging
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, List, Optional, Tuple

log = logging.getLogger(__name__)

BOT = "bot"
OPPONENT = "opponent"


@dataclass
class RoundResult:
    round_winner: str
    game_over: bool
    winner: Optional[str]
    scores: Dict[str, int]


class ScoreTracker:
    """First-to-N dice scoring for one ticket.

    Rolls arrive one at a time from the chat; ``offer_roll`` pairs bot and
    opponent rolls in arrival order and feeds each completed pair to
    ``record_round``. Ties go to the bot unless ``bot_wins_ties`` is off, in
    which case a tied round is replayed and scores nothing.
    """

    def __init__(self, target: int = 5, *, bot_wins_ties: bool = True) -> None:
        if target < 1:
            raise ValueError("target must be at least 1")
        self.target = target
        self.bot_wins_ties = bot_wins_ties
        self.scores: Dict[str, int] = {BOT: 0, OPPONENT: 0}
        self.rounds: List[Tuple[int, int, str]] = []
        self.winner: Optional[str] = None
        self._pending: Dict[str, Deque[int]] = {BOT: deque(), OPPONENT: deque()}

    @property
    def game_over(self) -> bool:
        return self.winner is not None

    def record_round(self, bot_roll: int, opp_roll: int) -> RoundResult:
        if self.game_over:
            raise RuntimeError("game already finished")
        for roll in (bot_roll, opp_roll):
            if not 1 <= int(roll) <= 6:
                raise ValueError(f"invalid die value {roll}")
        if bot_roll > opp_roll:
            round_winner = BOT
        elif opp_roll > bot_roll:
            round_winner = OPPONENT
        elif self.bot_wins_ties:
            round_winner = BOT
        else:
            round_winner = "tie"

        self.rounds.append((int(bot_roll), int(opp_roll), round_winner))
        if round_winner in self.scores:
            self.scores[round_winner] += 1
            if self.scores[round_winner] >= self.target:
                self.winner = round_winner
        return RoundResult(
            round_winner=round_winner,
            game_over=self.game_over,
            winner=self.winner,
            scores=dict(self.scores),
        )

    def offer_roll(self, side: str, value: int) -> Optional[RoundResult]:
        """Queue a roll for ``side``; returns a result once a pair is complete."""
        if self.game_over:
            log.debug("ignoring %s roll %s after game end", side, value)
            return None
        self._pending[side].append(int(value))
        if self._pending[BOT] and self._pending[OPPONENT]:
            return self.record_round(self._pending[BOT].popleft(), self._pending[OPPONENT].popleft())
        return None

    def awaiting(self, side: str) -> bool:
        """True when the other side has an unpaired roll and ``side`` has none."""
        other = OPPONENT if side == BOT else BOT
        return bool(self._pending[other]) and not self._pending[side]

    def has_pending(self, side: str) -> bool:
        return bool(self._pending[side])

    def did_bot_win(self) -> bool:
        if not self.game_over:
            raise RuntimeError("game is still in progress")
        return self.winner == BOT

    def formatted_score(self) -> str:
        return f"{self.scores[BOT]}-{self.scores[OPPONENT]}"

    def to_dict(self) -> dict:
        return {
            "target": self.target,
            "botWinsTies": self.bot_wins_ties,
            "scores": dict(self.scores),
            "rounds": [list(r) for r in self.rounds],
            "winner": self.winner,
        }

    @classmethod
    def from_dict(cls, payload: dict, *, target: Optional[int] = None) -> "ScoreTracker":
        tracker = cls(
            int(target or payload.get("target") or 5),
            bot_wins_ties=bool(payload.get("botWinsTies", True)),
        )
        scores = payload.get("scores") or {}
        tracker.scores = {BOT: int(scores.get(BOT, 0)), OPPONENT: int(scores.get(OPPONENT, 0))}
        tracker.rounds = [tuple(r) for r in payload.get("rounds") or []]
        tracker.winner = payload.get("winner")
        for side, score in tracker.scores.items():
            if score >= tracker.target:
                tracker.winner = side
        return tracker
