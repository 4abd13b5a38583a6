"""
Unit tests for the WebSocket codec.
Tests: handshake accept key, request-head parsing, frame encoding tiers, incremental decoding.
"""
import sys
import os
import struct

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from frame_codec import (
    CLOSE_MESSAGE_TOO_BIG, CLOSE_PROTOCOL_ERROR,
    OP_CLOSE, OP_PING, OP_PONG, OP_TEXT,
    FrameDecoder, ProtocolError,
    accept_key, apply_mask, build_handshake_response, encode_close,
    encode_frame, parse_request_head,
)

MASK = b"\x12\x34\x56\x78"


# =====================================================================
# Handshake
# =====================================================================

class TestHandshake:
    def test_rfc_test_vector(self):
        assert accept_key("dGhlIHNhbXBsZSBub25jZQ==") == "s3pPLMBiTxaQ9kYGzzhZRbK+xOo="

    def test_response_is_switching_protocols(self):
        response = build_handshake_response("dGhlIHNhbXBsZSBub25jZQ==").decode()
        assert response.startswith("HTTP/1.1 101 Switching Protocols\r\n")
        assert "Upgrade: websocket\r\n" in response
        assert "Connection: Upgrade\r\n" in response
        assert "Sec-WebSocket-Accept: s3pPLMBiTxaQ9kYGzzhZRbK+xOo=\r\n" in response
        assert response.endswith("\r\n\r\n")


class TestParseRequestHead:
    def test_upgrade_request(self):
        request = parse_request_head(
            b"GET /play?x=1 HTTP/1.1\r\n"
            b"Host: localhost:3000\r\n"
            b"Upgrade: websocket\r\n"
            b"Connection: keep-alive, Upgrade\r\n"
            b"Sec-WebSocket-Key: abc==\r\n"
        )
        assert request.method == "GET"
        assert request.path == "/play"
        assert request.query == "x=1"
        assert request.headers["sec-websocket-key"] == "abc=="
        assert request.wants_websocket()

    def test_plain_get_is_not_upgrade(self):
        request = parse_request_head(b"GET /health HTTP/1.1\r\nHost: x")
        assert not request.wants_websocket()
        assert request.query == ""

    def test_malformed_request_line(self):
        with pytest.raises(ProtocolError):
            parse_request_head(b"HELLO\r\nHost: x")

    def test_malformed_header(self):
        with pytest.raises(ProtocolError):
            parse_request_head(b"GET / HTTP/1.1\r\nno colon here")


# =====================================================================
# Encoding
# =====================================================================

class TestEncodeFrame:
    def test_short_text_frame(self):
        frame = encode_frame("hello")
        assert frame[0] == 0x81  # FIN + text
        assert frame[1] == 5  # unmasked, 7-bit length
        assert frame[2:] == b"hello"

    def test_medium_uses_16_bit_length(self):
        frame = encode_frame(b"x" * 200)
        assert frame[1] == 126
        assert struct.unpack("!H", frame[2:4])[0] == 200
        assert len(frame) == 4 + 200

    def test_boundary_125_and_126(self):
        assert encode_frame(b"x" * 125)[1] == 125
        assert encode_frame(b"x" * 126)[1] == 126

    def test_large_uses_64_bit_length(self):
        frame = encode_frame(b"x" * 70000)
        assert frame[1] == 127
        assert struct.unpack("!Q", frame[2:10])[0] == 70000
        assert len(frame) == 10 + 70000

    def test_boundary_65535_and_65536(self):
        assert encode_frame(b"x" * 65535)[1] == 126
        assert encode_frame(b"x" * 65536)[1] == 127

    def test_server_frames_are_unmasked(self):
        assert encode_frame("hi")[1] & 0x80 == 0

    def test_masked_frame(self):
        frame = encode_frame(b"abcd", mask=MASK)
        assert frame[1] == 0x80 | 4
        assert frame[2:6] == MASK
        assert frame[6:] == apply_mask(b"abcd", MASK)

    def test_bad_mask_length(self):
        with pytest.raises(ValueError):
            encode_frame(b"abcd", mask=b"\x00")

    def test_close_frame_carries_status(self):
        frame = encode_close(1000)
        assert frame[0] == 0x80 | OP_CLOSE
        assert struct.unpack("!H", frame[2:4])[0] == 1000


# =====================================================================
# Decoding
# =====================================================================

class TestFrameDecoder:
    @pytest.mark.parametrize("length", [10, 200, 70000])
    def test_round_trip_each_length_tier(self, length):
        payload = bytes(i % 251 for i in range(length))
        frames = FrameDecoder().feed(encode_frame(payload, OP_TEXT, mask=MASK))
        assert len(frames) == 1
        assert frames[0].opcode == OP_TEXT
        assert frames[0].fin
        assert frames[0].payload == payload

    def test_unmasks_with_rotating_key(self):
        masked = bytes([0x81, 0x80 | 3]) + MASK + bytes([ord("a") ^ 0x12, ord("b") ^ 0x34, ord("c") ^ 0x56])
        frames = FrameDecoder().feed(masked)
        assert frames[0].payload == b"abc"

    def test_partial_frame_waits_for_more_bytes(self):
        data = encode_frame(b"x" * 300, mask=MASK)
        decoder = FrameDecoder()
        assert decoder.feed(data[:1]) == []
        assert decoder.feed(data[1:3]) == []
        assert decoder.feed(data[3:100]) == []
        frames = decoder.feed(data[100:])
        assert len(frames) == 1
        assert frames[0].payload == b"x" * 300
        assert decoder.buffer == bytearray()

    def test_byte_at_a_time(self):
        data = encode_frame("héllo", mask=MASK)
        decoder = FrameDecoder()
        frames = []
        for i in range(len(data)):
            frames.extend(decoder.feed(data[i:i + 1]))
        assert [f.payload.decode("utf-8") for f in frames] == ["héllo"]

    def test_several_frames_in_one_chunk(self):
        data = (encode_frame("one", mask=MASK)
                + encode_frame(b"", OP_PING, mask=MASK)
                + encode_frame("two", mask=MASK))
        frames = FrameDecoder().feed(data)
        assert [f.opcode for f in frames] == [OP_TEXT, OP_PING, OP_TEXT]
        assert frames[2].payload == b"two"

    def test_trailing_partial_frame_kept(self):
        second = encode_frame("second", mask=MASK)
        decoder = FrameDecoder()
        frames = decoder.feed(encode_frame("first", mask=MASK) + second[:4])
        assert [f.payload for f in frames] == [b"first"]
        assert decoder.feed(second[4:])[0].payload == b"second"

    def test_unmasked_client_frame_rejected(self):
        with pytest.raises(ProtocolError) as exc_info:
            FrameDecoder().feed(encode_frame("hi"))
        assert exc_info.value.close_code == CLOSE_PROTOCOL_ERROR

    def test_unmasked_frame_read_when_mask_not_required(self):
        frames = FrameDecoder(require_mask=False).feed(encode_frame(b"", OP_PONG))
        assert frames[0].opcode == OP_PONG
        assert frames[0].payload == b""

    def test_oversized_control_frame_rejected(self):
        with pytest.raises(ProtocolError) as exc_info:
            FrameDecoder().feed(encode_frame(b"x" * 126, OP_PING, mask=MASK))
        assert exc_info.value.close_code == CLOSE_PROTOCOL_ERROR

    def test_fragmented_control_frame_rejected(self):
        data = bytes([OP_PING, 0x80]) + MASK
        with pytest.raises(ProtocolError):
            FrameDecoder().feed(data)

    def test_oversized_frame_rejected(self):
        decoder = FrameDecoder(max_payload=100)
        with pytest.raises(ProtocolError) as exc_info:
            decoder.feed(encode_frame(b"x" * 101, mask=MASK))
        assert exc_info.value.close_code == CLOSE_MESSAGE_TOO_BIG

    def test_non_fin_frame_reported(self):
        data = bytes([0x01, 0x80 | 2]) + MASK + apply_mask(b"hi", MASK)
        frame = FrameDecoder().feed(data)[0]
        assert not frame.fin
        assert frame.opcode == OP_TEXT
