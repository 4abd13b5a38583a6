"""Registry of live lobbies keyed by join code."""

from typing import Dict, Optional, Tuple
import logging
import random

import config
from models import GameError, Lobby, Phase, Player, generate_id

logger = logging.getLogger(__name__)


class LobbyError(GameError):
    """A join or create request that cannot be honoured; the message is user-facing."""


def normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


def clean_name(name: Optional[str]) -> str:
    return (name or config.DEFAULT_NAME)[:config.MAX_NAME_LENGTH]


class LobbyDirectory:
    """Owns every live Lobby.

    Created once per process. Lobbies enter on create and leave when their
    last connected player drops.
    """

    def __init__(self, rng: Optional[random.Random] = None):
        self.lobbies: Dict[str, Lobby] = {}
        self._rng = rng or random.SystemRandom()

    def __len__(self) -> int:
        return len(self.lobbies)

    def __contains__(self, code: str) -> bool:
        return code in self.lobbies

    def generate_code(self) -> str:
        for _ in range(config.MAX_LOBBY_CODE_ATTEMPTS):
            code = "".join(self._rng.choices(config.LOBBY_CODE_ALPHABET,
                                             k=config.LOBBY_CODE_LENGTH))
            if code not in self.lobbies:
                return code
        raise RuntimeError("Failed to generate unique lobby code")

    def create(self, host_name: Optional[str]) -> Lobby:
        host = Player(generate_id(), clean_name(host_name))
        lobby = Lobby(self.generate_code(), host)
        self.lobbies[lobby.code] = lobby
        logger.info("Lobby %s created by '%s'", lobby.code, host.name)
        return lobby

    def get(self, code: str) -> Optional[Lobby]:
        return self.lobbies.get(normalize_code(code))

    def join(self, code: str, name: Optional[str]) -> Tuple[Lobby, Player]:
        """Add a new player to the lobby with this code; returns (lobby, player)."""
        lobby = self.lobbies.get(normalize_code(code))
        if lobby is None:
            raise LobbyError("Lobby not found")
        if lobby.phase != Phase.LOBBY:
            raise LobbyError("Game already in progress")
        if len(lobby.players) >= config.MAX_PLAYERS:
            raise LobbyError(f"Lobby is full (max {config.MAX_PLAYERS})")
        player = Player(generate_id(), clean_name(name))
        lobby.add_player(player)
        logger.info("'%s' joined lobby %s (%d players)", player.name, lobby.code,
                    len(lobby.players))
        return lobby, player

    def remove(self, code: str) -> Optional[Lobby]:
        lobby = self.lobbies.pop(code, None)
        if lobby is not None:
            lobby.cancel_timer()
            logger.info("Lobby %s removed", code)
        return lobby

    def remove_if_abandoned(self, lobby: Lobby) -> bool:
        """Drop the lobby once none of its players is connected."""
        if lobby.all_disconnected() and self.lobbies.get(lobby.code) is lobby:
            self.remove(lobby.code)
            return True
        return False
