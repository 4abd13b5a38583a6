"""Centralized configuration: all env vars in one place."""
import os
import logging
from dotenv import load_dotenv

load_dotenv()

# --- Server ---
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "3000"))
CLIENT_HTML_PATH = os.getenv("CLIENT_HTML_PATH", "")

# --- WebSocket transport ---
MAX_HTTP_HEADER_SIZE = 8192  # bytes
MAX_FRAME_SIZE = 1024 * 1024  # bytes
MAX_SEND_BUFFER = 1024 * 1024  # bytes queued for one slow reader before it is dropped
READ_CHUNK_SIZE = 4096

# --- Lobbies ---
LOBBY_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
LOBBY_CODE_LENGTH = 5
MAX_LOBBY_CODE_ATTEMPTS = 100
MIN_PLAYERS = 3
MAX_PLAYERS = 10

# --- Game ---
ROUNDS = 3
MAX_NAME_LENGTH = 20
MAX_QUESTION_LENGTH = 200
MAX_ANSWER_LENGTH = 300
DEFAULT_NAME = "Player"
DEFAULT_QUESTION = "What's the best thing about being alive?"
PLACEHOLDER_ANSWER = "..."

# --- Timers (seconds) ---
TIMER_QUESTION = 60
TIMER_ANSWER = 60
TIMER_PER_PLAYER = 30  # guessing time per answerer
TIMER_VOTE = 20

# --- Logging ---
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FILE = os.getenv("LOG_FILE", "")


def setup_logging():
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if LOG_FILE:
        handlers.append(logging.FileHandler(LOG_FILE))
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )
