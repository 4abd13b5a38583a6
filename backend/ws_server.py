"""asyncio TCP server: WebSocket upgrades on any path, plain HTTP goes to the FastAPI app."""

from http import HTTPStatus
from typing import Awaitable, Callable, List, Optional, Tuple
from urllib.parse import unquote
import asyncio
import logging

import config
from connections import Connection
from frame_codec import (
    CLOSE_NORMAL, CLOSE_PROTOCOL_ERROR, CLOSE_UNSUPPORTED_DATA,
    OP_BINARY, OP_CLOSE, OP_CONTINUATION, OP_PING, OP_PONG, OP_TEXT,
    Frame, FrameDecoder, HttpRequest, ProtocolError,
    build_handshake_response, encode_close, encode_frame, parse_request_head,
)

logger = logging.getLogger(__name__)

TextHandler = Callable[[Connection, str], Awaitable[None]]


class WebSocketConnection(Connection):
    """Server side of one upgraded connection."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self.reader = reader
        self.writer = writer
        self.decoder = FrameDecoder()
        self.peer = writer.get_extra_info("peername")
        self._open = True

    @property
    def is_open(self) -> bool:
        return self._open and not self.writer.is_closing()

    async def send_text(self, text: str) -> None:
        await self._write(encode_frame(text, OP_TEXT))

    async def close(self, code: int = CLOSE_NORMAL) -> None:
        await self._write(encode_close(code))
        self.abort()

    def abort(self, discard: bool = False):
        """Stop using the connection; ``discard`` also drops anything still queued."""
        self._open = False
        if discard:
            self.writer.transport.abort()
        elif not self.writer.is_closing():
            self.writer.close()

    async def _write(self, data: bytes):
        # Never awaits the peer: callers hold the lobby lock while sending.
        if not self.is_open:
            return
        try:
            self.writer.write(data)
        except (ConnectionError, OSError) as exc:
            logger.debug("Write to %s failed: %s", self.peer, exc)
            self.abort()
            return
        backlog = self.writer.transport.get_write_buffer_size()
        if backlog > config.MAX_SEND_BUFFER:
            logger.warning("Dropping %s: %d bytes unread", self.peer, backlog)
            self.abort(discard=True)

    async def serve(self, on_text: TextHandler):
        """Read and dispatch frames until the peer closes or the stream ends."""
        while self.is_open:
            chunk = await self.reader.read(config.READ_CHUNK_SIZE)
            if not chunk:
                break
            try:
                frames = self.decoder.feed(chunk)
            except ProtocolError as exc:
                logger.warning("Protocol error from %s: %s", self.peer, exc)
                await self.close(exc.close_code)
                break
            for frame in frames:
                if not await self._handle_frame(frame, on_text):
                    return

    async def _handle_frame(self, frame: Frame, on_text: TextHandler) -> bool:
        """Returns False once the connection should stop reading."""
        if frame.opcode == OP_CLOSE:
            await self.close(CLOSE_NORMAL)
            return False
        if frame.opcode == OP_PING:
            await self._write(encode_frame(b"", OP_PONG))
            return True
        if frame.opcode == OP_PONG:
            return True
        if frame.opcode == OP_CONTINUATION or (frame.opcode in (OP_TEXT, OP_BINARY) and not frame.fin):
            logger.warning("Fragmented message from %s not supported", self.peer)
            await self.close(CLOSE_UNSUPPORTED_DATA)
            return False
        if frame.opcode == OP_BINARY:
            return True
        if frame.opcode != OP_TEXT:
            logger.warning("Unknown opcode 0x%x from %s", frame.opcode, self.peer)
            await self.close(CLOSE_PROTOCOL_ERROR)
            return False
        try:
            text = frame.payload.decode("utf-8")
        except UnicodeDecodeError:
            logger.warning("Dropping non UTF-8 text frame from %s", self.peer)
            return True
        await on_text(self, text)
        return True


async def call_asgi(app, request: HttpRequest,
                    client: Optional[tuple] = None) -> Tuple[int, List[Tuple[bytes, bytes]], bytes]:
    """Run a single bodiless HTTP request through an ASGI app and collect the response."""
    scope = {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": request.version.split("/", 1)[-1],
        "method": request.method,
        "scheme": "http",
        "path": unquote(request.path),
        "raw_path": request.path.encode("latin-1"),
        "query_string": request.query.encode("latin-1"),
        "root_path": "",
        "headers": [(name.encode("latin-1"), value.encode("latin-1"))
                    for name, value in request.headers.items()],
        "client": tuple(client[:2]) if client else None,
        "server": None,
    }
    response = {"status": 500, "headers": [], "body": bytearray()}

    async def receive():
        return {"type": "http.request", "body": b"", "more_body": False}

    async def send(message):
        if message["type"] == "http.response.start":
            response["status"] = message["status"]
            response["headers"] = list(message.get("headers", []))
        elif message["type"] == "http.response.body":
            response["body"] += message.get("body", b"")

    await app(scope, receive, send)
    return response["status"], response["headers"], bytes(response["body"])


def build_http_response(status: int, headers: List[Tuple[bytes, bytes]], body: bytes) -> bytes:
    try:
        reason = HTTPStatus(status).phrase
    except ValueError:
        reason = ""
    lines = [f"HTTP/1.1 {status} {reason}".encode("latin-1")]
    for name, value in headers:
        if name.lower() in (b"content-length", b"connection"):
            continue
        lines.append(name + b": " + value)
    lines.append(f"Content-Length: {len(body)}".encode("latin-1"))
    lines.append(b"Connection: close")
    return b"\r\n".join(lines) + b"\r\n\r\n" + body


class GameServer:
    """Accepts TCP connections and routes each to the WebSocket or HTTP side."""

    def __init__(self, socket_manager, app):
        self.socket_manager = socket_manager
        self.app = app
        self.server: Optional[asyncio.AbstractServer] = None

    async def start(self, host: str, port: int) -> asyncio.AbstractServer:
        self.server = await asyncio.start_server(
            self.handle_client, host, port, limit=config.MAX_HTTP_HEADER_SIZE)
        return self.server

    async def serve_forever(self, host: str, port: int):
        server = await self.start(host, port)
        logger.info("Listening on http://%s:%d", host, port)
        async with server:
            await server.serve_forever()

    async def handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        try:
            head = await reader.readuntil(b"\r\n\r\n")
        except asyncio.IncompleteReadError:
            writer.close()
            return
        except asyncio.LimitOverrunError:
            await self._respond(writer, 431, b"Request header too large")
            return

        try:
            request = parse_request_head(head[:-4])
        except ProtocolError as exc:
            logger.warning("Bad request: %s", exc)
            await self._respond(writer, 400, b"Bad Request")
            return

        if request.wants_websocket():
            await self._upgrade(request, reader, writer)
        else:
            await self._serve_http(request, writer)

    async def _upgrade(self, request: HttpRequest, reader: asyncio.StreamReader,
                       writer: asyncio.StreamWriter):
        key = request.headers.get("sec-websocket-key")
        if request.method != "GET" or not key:
            await self._respond(writer, 400, b"Bad WebSocket handshake")
            return
        if request.headers.get("sec-websocket-version", "13") != "13":
            await self._respond(writer, 426, b"Unsupported WebSocket version",
                                [(b"Sec-WebSocket-Version", b"13")])
            return

        writer.write(build_handshake_response(key))
        connection = WebSocketConnection(reader, writer)
        logger.info("WebSocket connection opened from %s", connection.peer)
        try:
            await writer.drain()
            await connection.serve(self.socket_manager.handle_text)
        except (ConnectionError, OSError) as exc:
            logger.info("Connection from %s lost: %s", connection.peer, exc)
        except Exception:
            logger.exception("WebSocket error for %s", connection.peer)
        finally:
            connection.abort()
            await self.socket_manager.handle_disconnect(connection)
            logger.info("WebSocket connection from %s closed", connection.peer)

    async def _serve_http(self, request: HttpRequest, writer: asyncio.StreamWriter):
        try:
            status, headers, body = await call_asgi(
                self.app, request, writer.get_extra_info("peername"))
        except Exception:
            logger.exception("HTTP handler failed for %s %s", request.method, request.target)
            status, headers, body = 500, [], b"Internal Server Error"
        await self._respond(writer, status, body, headers)

    async def _respond(self, writer: asyncio.StreamWriter, status: int, body: bytes,
                       headers: Optional[List[Tuple[bytes, bytes]]] = None):
        try:
            writer.write(build_http_response(status, headers or [], body))
            await writer.drain()
        except (ConnectionError, OSError):
            pass
        finally:
            writer.close()
