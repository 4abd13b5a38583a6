"""WebSocket handshake and frame codec (RFC 6455), no protocol library involved."""

from typing import Dict, List, NamedTuple, Optional, Tuple, Union
import base64
import hashlib
import struct

import config

WEBSOCKET_GUID = "258EAFA5-E914-47DA-95CA-C5AB0DC85B11"

OP_CONTINUATION = 0x0
OP_TEXT = 0x1
OP_BINARY = 0x2
OP_CLOSE = 0x8
OP_PING = 0x9
OP_PONG = 0xA

CLOSE_NORMAL = 1000
CLOSE_PROTOCOL_ERROR = 1002
CLOSE_UNSUPPORTED_DATA = 1003
CLOSE_MESSAGE_TOO_BIG = 1009


class ProtocolError(Exception):
    """Raised when the peer sends something the codec cannot accept."""

    def __init__(self, message: str, close_code: int = CLOSE_PROTOCOL_ERROR):
        super().__init__(message)
        self.close_code = close_code


class HttpRequest(NamedTuple):
    method: str
    target: str
    version: str
    headers: Dict[str, str]  # lower-cased names

    @property
    def path(self) -> str:
        return self.target.split("?", 1)[0]

    @property
    def query(self) -> str:
        return self.target.partition("?")[2]

    def wants_websocket(self) -> bool:
        upgrade = self.headers.get("upgrade", "").lower()
        connection = self.headers.get("connection", "").lower()
        return upgrade == "websocket" and "upgrade" in connection


class Frame(NamedTuple):
    fin: bool
    opcode: int
    payload: bytes


def parse_request_head(head: bytes) -> HttpRequest:
    """Parse an HTTP/1.1 request line and header block (without the body)."""
    lines = head.decode("latin-1").split("\r\n")
    parts = lines[0].split(" ")
    if len(parts) != 3 or not parts[2].startswith("HTTP/"):
        raise ProtocolError("Malformed request line")
    method, target, version = parts
    headers: Dict[str, str] = {}
    for line in lines[1:]:
        if not line:
            continue
        name, sep, value = line.partition(":")
        if not sep:
            raise ProtocolError("Malformed header line")
        headers[name.strip().lower()] = value.strip()
    return HttpRequest(method, target, version, headers)


def accept_key(client_key: str) -> str:
    digest = hashlib.sha1((client_key + WEBSOCKET_GUID).encode("ascii")).digest()
    return base64.b64encode(digest).decode("ascii")


def build_handshake_response(client_key: str) -> bytes:
    return (
        "HTTP/1.1 101 Switching Protocols\r\n"
        "Upgrade: websocket\r\n"
        "Connection: Upgrade\r\n"
        f"Sec-WebSocket-Accept: {accept_key(client_key)}\r\n"
        "\r\n"
    ).encode("ascii")


def encode_frame(payload: Union[bytes, str], opcode: int = OP_TEXT,
                 mask: Optional[bytes] = None) -> bytes:
    """Encode one unfragmented frame with FIN set.

    Servers never mask; ``mask`` exists so a client (or a test) can produce
    the masked frames a browser would send.
    """
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    length = len(payload)
    header = bytearray([0x80 | opcode])
    mask_bit = 0x80 if mask is not None else 0
    if length < 126:
        header.append(mask_bit | length)
    elif length < 65536:
        header.append(mask_bit | 126)
        header += struct.pack("!H", length)
    else:
        header.append(mask_bit | 127)
        header += struct.pack("!Q", length)
    if mask is None:
        return bytes(header) + payload
    if len(mask) != 4:
        raise ValueError("mask must be exactly 4 bytes")
    return bytes(header) + mask + apply_mask(payload, mask)


def encode_close(code: int = CLOSE_NORMAL, reason: str = "") -> bytes:
    return encode_frame(struct.pack("!H", code) + reason.encode("utf-8"), OP_CLOSE)


def apply_mask(payload: bytes, mask: bytes) -> bytes:
    return bytes(b ^ mask[i % 4] for i, b in enumerate(payload))


class FrameDecoder:
    """Incremental decoder: feed raw bytes, get back every complete frame.

    Bytes of an incomplete frame stay buffered until the next ``feed``.
    Server side decoders require every frame to be masked; pass
    ``require_mask=False`` to read server frames.
    """

    def __init__(self, max_payload: Optional[int] = None, require_mask: bool = True):
        self.buffer = bytearray()
        self.require_mask = require_mask
        self.max_payload = max_payload if max_payload is not None else config.MAX_FRAME_SIZE

    def feed(self, data: bytes) -> List[Frame]:
        self.buffer += data
        frames = []
        while True:
            parsed = self._parse_one()
            if parsed is None:
                break
            frame, consumed = parsed
            del self.buffer[:consumed]
            frames.append(frame)
        return frames

    def _parse_one(self) -> Optional[Tuple[Frame, int]]:
        buf = self.buffer
        if len(buf) < 2:
            return None
        fin = bool(buf[0] & 0x80)
        opcode = buf[0] & 0x0F
        masked = bool(buf[1] & 0x80)
        length = buf[1] & 0x7F
        if self.require_mask and not masked:
            raise ProtocolError("Client frame is not masked")
        if opcode & 0x08 and (length > 125 or not fin):
            raise ProtocolError(f"Invalid control frame 0x{opcode:x}")
        offset = 2
        if length == 126:
            if len(buf) < offset + 2:
                return None
            (length,) = struct.unpack_from("!H", buf, offset)
            offset += 2
        elif length == 127:
            if len(buf) < offset + 8:
                return None
            (length,) = struct.unpack_from("!Q", buf, offset)
            offset += 8
        if length > self.max_payload:
            raise ProtocolError(f"Frame of {length} bytes exceeds limit",
                                CLOSE_MESSAGE_TOO_BIG)
        mask = b""
        if masked:
            if len(buf) < offset + 4:
                return None
            mask = bytes(buf[offset:offset + 4])
            offset += 4
        if len(buf) < offset + length:
            return None
        payload = bytes(buf[offset:offset + length])
        if masked:
            payload = apply_mask(payload, mask)
        return Frame(fin, opcode, payload), offset + length
