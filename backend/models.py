"""Lobby, player and answer state plus the pure scoring helpers."""

from typing import Dict, List, Optional, Sequence, Tuple
from collections import Counter
import asyncio
import random
import secrets

VOTE_CATEGORIES = ("best", "funniest")


class Phase:
    LOBBY = "lobby"
    QUESTION = "question"
    ANSWERING = "answering"
    REVEAL = "reveal"
    GUESSING = "guessing"
    VOTING = "voting"
    RESULTS = "results"
    GAMEOVER = "gameover"


class GameError(Exception):
    """A rejected request whose message is sent back to the player."""


def generate_id() -> str:
    return secrets.token_hex(8)


class Player:
    def __init__(self, player_id: str, name: str):
        self.id = player_id
        self.name = name
        self.score = 0
        self.connected = True

    def ref(self) -> dict:
        return {"id": self.id, "name": self.name}

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "score": self.score,
                "connected": self.connected}


class Answer:
    def __init__(self, answer_id: str, text: str, author_id: str):
        self.id = answer_id
        self.text = text
        self.author_id = author_id

    def public(self) -> dict:
        """The answer as shown to players, without its author."""
        return {"id": self.id, "text": self.text}


class Lobby:
    def __init__(self, code: str, host: Player):
        self.code = code
        self.host_id = host.id
        self.players: List[Player] = [host]
        self.phase = Phase.LOBBY
        self.guesser_order: List[str] = []
        self.guesser_index = 0
        self.rounds = 0
        self.question = ""
        self.answers: Dict[str, str] = {}  # author id -> text
        self.shuffled_answers: Tuple[Answer, ...] = ()
        self.guesses: Dict[str, str] = {}  # answer id -> guessed player id
        self.votes: Dict[str, Dict[str, str]] = {c: {} for c in VOTE_CATEGORIES}  # category -> voter id -> answer id
        self.reveal_index = 0
        self.guess_results: Optional[dict] = None
        self.timer_task: Optional[asyncio.Task] = None
        self.timer_ends_at: Optional[float] = None
        self.timer_generation = 0
        self.lock = asyncio.Lock()

    # --- players ---

    def get_player(self, player_id: str) -> Optional[Player]:
        for player in self.players:
            if player.id == player_id:
                return player
        return None

    def add_player(self, player: Player):
        self.players.append(player)

    def connected_players(self) -> List[Player]:
        return [p for p in self.players if p.connected]

    def all_disconnected(self) -> bool:
        return all(not p.connected for p in self.players)

    def is_host(self, player_id: str) -> bool:
        return self.host_id == player_id

    @property
    def guesser(self) -> Optional[Player]:
        if not self.guesser_order or self.guesser_index >= len(self.guesser_order):
            return None
        return self.get_player(self.guesser_order[self.guesser_index])

    def is_guesser(self, player_id: str) -> bool:
        guesser = self.guesser
        return guesser is not None and guesser.id == player_id

    def answerers(self) -> List[Player]:
        guesser = self.guesser
        return [p for p in self.players if guesser is None or p.id != guesser.id]

    def get_answer(self, answer_id: str) -> Optional[Answer]:
        for answer in self.shuffled_answers:
            if answer.id == answer_id:
                return answer
        return None

    # --- turn bookkeeping ---

    @property
    def round_number(self) -> int:
        return self.guesser_index // max(1, len(self.players)) + 1

    def reset_turn_state(self):
        self.question = ""
        self.answers = {}
        self.shuffled_answers = ()
        self.guesses = {}
        self.votes = {c: {} for c in VOTE_CATEGORIES}
        self.reveal_index = 0
        self.guess_results = None

    def reset_scores(self):
        for player in self.players:
            player.score = 0

    def cancel_timer(self):
        if self.timer_task:
            self.timer_task.cancel()
            self.timer_task = None
        self.timer_ends_at = None
        self.timer_generation += 1

    # --- views ---

    def player_list(self) -> List[dict]:
        return [p.to_dict() for p in self.players]

    def scoreboard(self) -> List[dict]:
        """Players by descending score; sorted() is stable so ties keep join order."""
        entries = [{"id": p.id, "name": p.name, "score": p.score} for p in self.players]
        return sorted(entries, key=lambda e: e["score"], reverse=True)


def build_guesser_order(player_ids: Sequence[str], rounds: int,
                        rng: Optional[random.Random] = None) -> List[str]:
    """One independently shuffled permutation of every player per round."""
    rng = rng or random
    order: List[str] = []
    for _ in range(rounds):
        permutation = list(player_ids)
        rng.shuffle(permutation)
        order.extend(permutation)
    return order


def shuffle_answers(answers: Dict[str, str],
                    rng: Optional[random.Random] = None) -> Tuple[Answer, ...]:
    entries = [Answer(generate_id(), text, author_id) for author_id, text in answers.items()]
    (rng or random).shuffle(entries)
    return tuple(entries)


def score_guesses(answers: Sequence[Answer], guesses: Dict[str, str]) -> Tuple[int, List[dict]]:
    """Compare the guessed author of each answer with the real one.

    Returns the number of correct guesses and one result row per answer.
    Answers without a guess count as wrong.
    """
    correct = 0
    results = []
    for answer in answers:
        guessed = guesses.get(answer.id)
        is_correct = guessed == answer.author_id
        if is_correct:
            correct += 1
        results.append({
            "answerId": answer.id,
            "answerText": answer.text,
            "actualPlayerId": answer.author_id,
            "guessedPlayerId": guessed,
            "correct": is_correct,
        })
    return correct, results


def tally_votes(votes: Dict[str, str]) -> Optional[str]:
    """Winning answer id for one category, or None when nobody voted.

    Ties go to the answer counted first. Counter keeps the order in which
    voters first voted and only a strictly greater count replaces the leader.
    """
    counts = Counter(votes.values())
    winner = None
    best = 0
    for answer_id, count in counts.items():
        if count > best:
            best = count
            winner = answer_id
    return winner
