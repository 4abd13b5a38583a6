"""WhoDat? game server."""

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import HTMLResponse
from pathlib import Path
from typing import Optional
import asyncio
import logging

import config
config.setup_logging()

from connections import ConnectionRegistry
from lobby_directory import LobbyDirectory
from socket_manager import SocketManager
from ws_server import GameServer

logger = logging.getLogger(__name__)


def find_client_html() -> Optional[Path]:
    candidates = [
        Path(__file__).parent / "client" / "index.html",
        Path.cwd() / "client" / "index.html",
        Path.cwd() / "index.html",
    ]
    if config.CLIENT_HTML_PATH:
        candidates.insert(0, Path(config.CLIENT_HTML_PATH))
    for path in candidates:
        if path.is_file():
            return path
    return None


# Process-wide registries: created here, handed to whoever needs them
directory = LobbyDirectory()
registry = ConnectionRegistry()
socket_manager = SocketManager(directory, registry)

app = FastAPI(title="WhoDat API")
app.state.directory = directory


@app.get("/", response_class=HTMLResponse)
@app.get("/index.html", response_class=HTMLResponse)
async def index():
    path = find_client_html()
    if path is None:
        raise HTTPException(status_code=404, detail="Client not found")
    return HTMLResponse(path.read_text(encoding="utf-8"))


@app.get("/health")
async def health(request: Request):
    return {"status": "ok", "lobbies": len(request.app.state.directory)}


async def serve():
    server = GameServer(socket_manager, app)
    logger.info("Starting WhoDat server")
    try:
        await server.serve_forever(config.HOST, config.PORT)
    finally:
        logger.info("Shutting down WhoDat server")


def run():
    try:
        asyncio.run(serve())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
