"""Connection interface, connection registry and lobby broadcaster."""

from abc import ABC, abstractmethod
from typing import Dict, List, NamedTuple, Optional, Tuple
import json
import logging

logger = logging.getLogger(__name__)


class Connection(ABC):
    """A live, bidirectional client connection.

    The transport implements this; game logic only ever sees this interface.
    Implementations must swallow write errors on a dead connection.
    """

    @property
    @abstractmethod
    def is_open(self) -> bool:
        ...

    @abstractmethod
    async def send_text(self, text: str) -> None:
        ...

    @abstractmethod
    async def close(self, code: int = 1000) -> None:
        ...


class ClientInfo(NamedTuple):
    player_id: str
    lobby_code: str
    name: str


class ConnectionRegistry:
    """Live connection -> (player id, lobby code, name).

    Entries are added once create/join succeeds and dropped on disconnect.
    """

    def __init__(self):
        self._clients: Dict[Connection, ClientInfo] = {}

    def register(self, connection: Connection, player_id: str, lobby_code: str,
                 name: str) -> ClientInfo:
        info = ClientInfo(player_id, lobby_code, name)
        self._clients[connection] = info
        return info

    def get(self, connection: Connection) -> Optional[ClientInfo]:
        return self._clients.get(connection)

    def unregister(self, connection: Connection) -> Optional[ClientInfo]:
        return self._clients.pop(connection, None)

    def in_lobby(self, lobby_code: str) -> List[Tuple[Connection, ClientInfo]]:
        return [(conn, info) for conn, info in self._clients.items()
                if info.lobby_code == lobby_code]

    def find_player(self, lobby_code: str, player_id: str) -> Optional[Connection]:
        for conn, info in self._clients.items():
            if info.lobby_code == lobby_code and info.player_id == player_id:
                return conn
        return None

    def __len__(self) -> int:
        return len(self._clients)


class Broadcaster:
    """Fire-and-forget JSON delivery to lobbies and single connections."""

    def __init__(self, registry: ConnectionRegistry):
        self.registry = registry

    async def broadcast(self, lobby_code: str, event: dict):
        data = json.dumps(event)
        for connection, _ in self.registry.in_lobby(lobby_code):
            if connection.is_open:
                await connection.send_text(data)

    async def send_to(self, connection: Connection, event: dict):
        if connection.is_open:
            await connection.send_text(json.dumps(event))

    async def send_to_player(self, lobby_code: str, player_id: str, event: dict):
        connection = self.registry.find_player(lobby_code, player_id)
        if connection is not None:
            await self.send_to(connection, event)
        else:
            logger.debug("No connection for player %s in lobby %s", player_id, lobby_code)
