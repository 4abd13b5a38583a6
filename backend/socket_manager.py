"""Routes decoded client messages to the game engine and cleans up after disconnects."""

from typing import Optional
import logging

from connections import Broadcaster, Connection, ConnectionRegistry
from game_engine import GameEngine
from lobby_directory import LobbyDirectory, LobbyError
from messages import (
    MESSAGE_TYPES, CreateLobby, JoinLobby, NextReveal, NextTurn, PlayAgain,
    StartGame, SubmitAnswer, SubmitGuesses, SubmitQuestion, Vote,
    parse_client_message,
)
from models import GameError, Lobby

logger = logging.getLogger(__name__)


class SocketManager:
    def __init__(self, directory: LobbyDirectory, registry: ConnectionRegistry):
        self.directory = directory
        self.registry = registry
        self.broadcaster = Broadcaster(registry)
        self.engine = GameEngine(self.broadcaster)
        self._handlers = {
            CreateLobby: self._handle_create,
            JoinLobby: self._handle_join,
            StartGame: self._handle_start,
            SubmitQuestion: self._handle_question,
            SubmitAnswer: self._handle_answer,
            NextReveal: self._handle_next_reveal,
            SubmitGuesses: self._handle_guesses,
            Vote: self._handle_vote,
            NextTurn: self._handle_next_turn,
            PlayAgain: self._handle_play_again,
        }
        missing = set(MESSAGE_TYPES) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler for {sorted(m.__name__ for m in missing)}")

    async def handle_text(self, connection: Connection, data: str):
        message = parse_client_message(data)
        if message is None:
            return
        try:
            await self._handlers[type(message)](connection, message)
        except GameError as exc:
            await self.broadcaster.send_to(connection, {"type": "error", "message": str(exc)})

    async def handle_disconnect(self, connection: Connection):
        client = self.registry.unregister(connection)
        if client is None:
            return
        logger.info("Player '%s' disconnected from lobby %s", client.name, client.lobby_code)
        lobby = self.directory.get(client.lobby_code)
        if lobby is None:
            return
        await self.engine.player_disconnected(lobby, client.player_id)
        self.directory.remove_if_abandoned(lobby)

    def _sender_lobby(self, connection: Connection) -> Optional[tuple]:
        client = self.registry.get(connection)
        if client is None:
            return None
        lobby = self.directory.get(client.lobby_code)
        if lobby is None:
            return None
        return lobby, client.player_id

    # --- lobby membership ---

    async def _handle_create(self, connection: Connection, message: CreateLobby):
        await self.handle_disconnect(connection)
        lobby = self.directory.create(message.name)
        host = lobby.players[0]
        self.registry.register(connection, host.id, lobby.code, host.name)
        async with lobby.lock:
            await self.broadcaster.send_to(connection, {
                "type": "joined", "playerId": host.id, "lobbyCode": lobby.code, "isHost": True,
            })
            await self.engine.broadcast_lobby_state(lobby)

    async def _handle_join(self, connection: Connection, message: JoinLobby):
        target: Optional[Lobby] = self.directory.get(message.code)
        if target is None:
            raise LobbyError("Lobby not found")
        current = self.registry.get(connection)
        if current is not None and current.lobby_code == target.code:
            return
        async with target.lock:
            lobby, player = self.directory.join(target.code, message.name)
        # Leave the previous lobby only once the new one has accepted us
        await self.handle_disconnect(connection)
        self.registry.register(connection, player.id, lobby.code, player.name)
        async with lobby.lock:
            await self.broadcaster.send_to(connection, {
                "type": "joined", "playerId": player.id, "lobbyCode": lobby.code, "isHost": False,
            })
            await self.engine.broadcast_lobby_state(lobby)

    # --- game flow ---

    async def _handle_start(self, connection: Connection, message: StartGame):
        sender = self._sender_lobby(connection)
        if sender:
            await self.engine.start_game(*sender)

    async def _handle_question(self, connection: Connection, message: SubmitQuestion):
        sender = self._sender_lobby(connection)
        if sender:
            await self.engine.submit_question(*sender, message.question)

    async def _handle_answer(self, connection: Connection, message: SubmitAnswer):
        sender = self._sender_lobby(connection)
        if sender:
            await self.engine.submit_answer(*sender, message.answer)

    async def _handle_next_reveal(self, connection: Connection, message: NextReveal):
        sender = self._sender_lobby(connection)
        if sender:
            await self.engine.next_reveal(*sender)

    async def _handle_guesses(self, connection: Connection, message: SubmitGuesses):
        sender = self._sender_lobby(connection)
        if sender:
            await self.engine.submit_guesses(*sender, message.guesses)

    async def _handle_vote(self, connection: Connection, message: Vote):
        sender = self._sender_lobby(connection)
        if sender:
            await self.engine.vote(*sender, message.category, message.answer_id)

    async def _handle_next_turn(self, connection: Connection, message: NextTurn):
        sender = self._sender_lobby(connection)
        if sender:
            await self.engine.next_turn(*sender)

    async def _handle_play_again(self, connection: Connection, message: PlayAgain):
        sender = self._sender_lobby(connection)
        if sender:
            await self.engine.play_again(*sender)
