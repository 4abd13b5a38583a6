"""Per-lobby phase engine for WhoDat?.

Turn cycle: question -> answering -> reveal -> guessing -> voting -> results,
then the next question or gameover. Every public coroutine takes the lobby lock
for the whole transition including its broadcasts, and so does every timer
expiry, so one lobby only ever moves one step at a time.
"""

from typing import Awaitable, Callable, Dict, Optional
import asyncio
import logging
import time

import config
from connections import Broadcaster
from models import (
    VOTE_CATEGORIES, GameError, Lobby, Phase,
    build_guesser_order, score_guesses, shuffle_answers, tally_votes,
)

logger = logging.getLogger(__name__)

TimerCallback = Callable[[Lobby], Awaitable[None]]


class GameEngine:
    def __init__(self, broadcaster: Broadcaster):
        self.broadcaster = broadcaster

    # =====================================================================
    # Player actions
    # =====================================================================

    async def start_game(self, lobby: Lobby, player_id: str):
        async with lobby.lock:
            if not lobby.is_host(player_id):
                return
            if lobby.phase not in (Phase.LOBBY, Phase.GAMEOVER):
                return
            if len(lobby.connected_players()) < config.MIN_PLAYERS:
                raise GameError(f"Need at least {config.MIN_PLAYERS} players")
            lobby.rounds = config.ROUNDS
            lobby.guesser_order = build_guesser_order([p.id for p in lobby.players],
                                                      config.ROUNDS)
            lobby.guesser_index = 0
            lobby.reset_scores()
            logger.info("Game started in lobby %s with %d players", lobby.code,
                        len(lobby.players))
            await self._start_question_phase(lobby)

    async def submit_question(self, lobby: Lobby, player_id: str, question: str):
        async with lobby.lock:
            if lobby.phase != Phase.QUESTION or not lobby.is_guesser(player_id):
                return
            lobby.question = question[:config.MAX_QUESTION_LENGTH]
            lobby.cancel_timer()
            await self._start_answer_phase(lobby)

    async def submit_answer(self, lobby: Lobby, player_id: str, answer: str):
        async with lobby.lock:
            if lobby.phase != Phase.ANSWERING or lobby.is_guesser(player_id):
                return
            if lobby.get_player(player_id) is None:
                return
            lobby.answers[player_id] = answer[:config.MAX_ANSWER_LENGTH]
            await self.broadcaster.send_to_player(lobby.code, player_id,
                                                  {"type": "answer_submitted"})

            answerers = lobby.answerers()
            if all(p.id in lobby.answers for p in answerers):
                lobby.cancel_timer()
                await self._start_reveal_phase(lobby)
            else:
                await self.broadcaster.broadcast(lobby.code, {
                    "type": "answer_progress",
                    "submitted": len(lobby.answers),
                    "total": len(answerers),
                })

    async def next_reveal(self, lobby: Lobby, player_id: str):
        async with lobby.lock:
            if lobby.phase != Phase.REVEAL or not lobby.is_guesser(player_id):
                return
            lobby.reveal_index += 1
            if lobby.reveal_index >= len(lobby.shuffled_answers):
                await self._start_guessing_phase(lobby)
            else:
                await self._send_reveal_answer(lobby)

    async def submit_guesses(self, lobby: Lobby, player_id: str, guesses: Dict[str, str]):
        async with lobby.lock:
            if lobby.phase != Phase.GUESSING or not lobby.is_guesser(player_id):
                return
            lobby.guesses = {answer_id: guessed for answer_id, guessed in guesses.items()
                             if lobby.get_answer(answer_id) is not None}
            lobby.cancel_timer()
            await self._finish_guessing(lobby)

    async def vote(self, lobby: Lobby, player_id: str, category: str, answer_id: str):
        async with lobby.lock:
            if lobby.phase != Phase.VOTING or category not in VOTE_CATEGORIES:
                return
            if lobby.get_player(player_id) is None or lobby.get_answer(answer_id) is None:
                return
            lobby.votes[category][player_id] = answer_id

            all_voted = all(p.id in lobby.votes[c]
                            for p in lobby.players for c in VOTE_CATEGORIES)
            if all_voted:
                lobby.cancel_timer()
                await self._finish_voting(lobby)

    async def next_turn(self, lobby: Lobby, player_id: str):
        async with lobby.lock:
            if lobby.phase != Phase.RESULTS or not lobby.is_host(player_id):
                return
            lobby.guesser_index += 1
            if lobby.guesser_index >= len(lobby.guesser_order):
                await self._end_game(lobby)
            else:
                await self._start_question_phase(lobby)

    async def play_again(self, lobby: Lobby, player_id: str):
        async with lobby.lock:
            if not lobby.is_host(player_id):
                return
            lobby.cancel_timer()
            lobby.phase = Phase.LOBBY
            lobby.reset_turn_state()
            lobby.guesser_order = []
            lobby.guesser_index = 0
            lobby.reset_scores()
            logger.info("Lobby %s reset for another game", lobby.code)
            await self.broadcaster.broadcast(lobby.code, {"type": "phase", "phase": Phase.LOBBY})
            await self.broadcast_lobby_state(lobby)

    async def player_disconnected(self, lobby: Lobby, player_id: str):
        async with lobby.lock:
            player = lobby.get_player(player_id)
            if player is None:
                return
            player.connected = False
            await self.broadcast_lobby_state(lobby)

    async def broadcast_lobby_state(self, lobby: Lobby):
        await self.broadcaster.broadcast(lobby.code, {
            "type": "lobby_update",
            "players": lobby.player_list(),
            "hostId": lobby.host_id,
            "code": lobby.code,
        })

    # =====================================================================
    # Timer
    # =====================================================================

    async def _start_timer(self, lobby: Lobby, seconds: float, on_expire: TimerCallback):
        """Replace the lobby's pending timer. Caller holds the lobby lock."""
        lobby.cancel_timer()
        generation = lobby.timer_generation
        lobby.timer_ends_at = time.time() + seconds
        lobby.timer_task = asyncio.create_task(
            self._run_timer(lobby, seconds, generation, on_expire))
        await self.broadcaster.broadcast(lobby.code, {
            "type": "timer",
            "seconds": seconds,
            "endsAt": int(lobby.timer_ends_at * 1000),
        })

    async def _run_timer(self, lobby: Lobby, seconds: float, generation: int,
                         on_expire: TimerCallback):
        try:
            await asyncio.sleep(seconds)
            async with lobby.lock:
                # Superseded while waiting for the lock
                if lobby.timer_generation != generation:
                    return
                lobby.timer_task = None
                lobby.timer_ends_at = None
                logger.info("Timer expired in lobby %s (phase %s)", lobby.code, lobby.phase)
                await on_expire(lobby)
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception("Timer callback failed in lobby %s", lobby.code)

    # =====================================================================
    # Phase transitions (caller holds the lobby lock)
    # =====================================================================

    def _guesser_ref(self, lobby: Lobby) -> Optional[dict]:
        guesser = lobby.guesser
        return guesser.ref() if guesser else None

    async def _start_question_phase(self, lobby: Lobby):
        lobby.phase = Phase.QUESTION
        lobby.reset_turn_state()
        await self.broadcaster.broadcast(lobby.code, {
            "type": "phase",
            "phase": Phase.QUESTION,
            "guesser": self._guesser_ref(lobby),
            "turnNumber": lobby.guesser_index + 1,
            "totalTurns": len(lobby.guesser_order),
            "roundNumber": lobby.round_number,
            "totalRounds": lobby.rounds,
        })
        await self._start_timer(lobby, config.TIMER_QUESTION, self._question_timeout)

    async def _question_timeout(self, lobby: Lobby):
        if lobby.phase != Phase.QUESTION:
            return
        if not lobby.question:
            lobby.question = config.DEFAULT_QUESTION
        await self._start_answer_phase(lobby)

    async def _start_answer_phase(self, lobby: Lobby):
        lobby.phase = Phase.ANSWERING
        await self.broadcaster.broadcast(lobby.code, {
            "type": "phase",
            "phase": Phase.ANSWERING,
            "question": lobby.question,
            "guesser": self._guesser_ref(lobby),
        })
        await self._start_timer(lobby, config.TIMER_ANSWER, self._answer_timeout)

    async def _answer_timeout(self, lobby: Lobby):
        if lobby.phase != Phase.ANSWERING:
            return
        for player in lobby.answerers():
            lobby.answers.setdefault(player.id, config.PLACEHOLDER_ANSWER)
        await self._start_reveal_phase(lobby)

    async def _start_reveal_phase(self, lobby: Lobby):
        lobby.cancel_timer()
        lobby.shuffled_answers = shuffle_answers(lobby.answers)
        lobby.reveal_index = 0
        lobby.phase = Phase.REVEAL
        await self.broadcaster.broadcast(lobby.code, {
            "type": "phase",
            "phase": Phase.REVEAL,
            "question": lobby.question,
            "totalAnswers": len(lobby.shuffled_answers),
            "guesser": self._guesser_ref(lobby),
        })
        if lobby.shuffled_answers:
            await self._send_reveal_answer(lobby)
        else:
            await self._start_guessing_phase(lobby)

    async def _send_reveal_answer(self, lobby: Lobby):
        answer = lobby.shuffled_answers[lobby.reveal_index]
        await self.broadcaster.broadcast(lobby.code, {
            "type": "reveal_answer",
            "index": lobby.reveal_index,
            "total": len(lobby.shuffled_answers),
            "answer": answer.public(),
        })

    async def _start_guessing_phase(self, lobby: Lobby):
        lobby.phase = Phase.GUESSING
        answerers = lobby.answerers()
        await self.broadcaster.broadcast(lobby.code, {
            "type": "phase",
            "phase": Phase.GUESSING,
            "question": lobby.question,
            "answers": [a.public() for a in lobby.shuffled_answers],
            "players": [p.ref() for p in answerers],
            "guesser": self._guesser_ref(lobby),
        })
        await self._start_timer(lobby, config.TIMER_PER_PLAYER * len(answerers),
                                self._guessing_timeout)

    async def _guessing_timeout(self, lobby: Lobby):
        if lobby.phase != Phase.GUESSING:
            return
        await self._finish_guessing(lobby)

    async def _finish_guessing(self, lobby: Lobby):
        correct, rows = score_guesses(lobby.shuffled_answers, lobby.guesses)
        guesser = lobby.guesser
        if guesser is not None:
            guesser.score += correct

        results = []
        for row in rows:
            actual = lobby.get_player(row["actualPlayerId"])
            guessed = lobby.get_player(row["guessedPlayerId"]) if row["guessedPlayerId"] else None
            results.append({
                "answerId": row["answerId"],
                "answerText": row["answerText"],
                "actualPlayer": actual.ref() if actual else None,
                "guessedPlayer": guessed.ref() if guessed else None,
                "correct": row["correct"],
            })
        lobby.guess_results = {
            "correct": correct,
            "total": len(lobby.shuffled_answers),
            "results": results,
        }
        logger.info("Lobby %s: guesser scored %d/%d", lobby.code, correct,
                    len(lobby.shuffled_answers))
        await self._start_voting_phase(lobby)

    async def _start_voting_phase(self, lobby: Lobby):
        lobby.phase = Phase.VOTING
        await self.broadcaster.broadcast(lobby.code, {
            "type": "phase",
            "phase": Phase.VOTING,
            "question": lobby.question,
            "answers": [a.public() for a in lobby.shuffled_answers],
            "guesser": self._guesser_ref(lobby),
        })
        await self._start_timer(lobby, config.TIMER_VOTE, self._voting_timeout)

    async def _voting_timeout(self, lobby: Lobby):
        if lobby.phase != Phase.VOTING:
            return
        await self._finish_voting(lobby)

    async def _finish_voting(self, lobby: Lobby):
        winners = {}
        for category in VOTE_CATEGORIES:
            answer = lobby.get_answer(tally_votes(lobby.votes[category]) or "")
            if answer is not None:
                author = lobby.get_player(answer.author_id)
                if author is not None:
                    author.score += 1
            winners[category] = answer
        await self._show_results(lobby, winners["best"], winners["funniest"])

    async def _show_results(self, lobby: Lobby, best, funniest):
        lobby.phase = Phase.RESULTS

        def describe(answer):
            if answer is None:
                return None
            author = lobby.get_player(answer.author_id)
            return {"text": answer.text, "player": author.name if author else None}

        await self.broadcaster.broadcast(lobby.code, {
            "type": "phase",
            "phase": Phase.RESULTS,
            "guessResults": lobby.guess_results,
            "bestAnswer": describe(best),
            "funniestAnswer": describe(funniest),
            "scoreboard": lobby.scoreboard(),
        })

    async def _end_game(self, lobby: Lobby):
        lobby.phase = Phase.GAMEOVER
        lobby.cancel_timer()
        logger.info("Game over in lobby %s", lobby.code)
        await self.broadcaster.broadcast(lobby.code, {
            "type": "phase",
            "phase": Phase.GAMEOVER,
            "scoreboard": lobby.scoreboard(),
        })
