"""Client -> server messages as a closed, type-discriminated union."""

from typing import Annotated, Dict, Literal, Optional, Union, get_args
import logging

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

logger = logging.getLogger(__name__)


class _Message(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class CreateLobby(_Message):
    type: Literal["create_lobby"]
    name: Optional[str] = None


class JoinLobby(_Message):
    type: Literal["join_lobby"]
    name: Optional[str] = None
    code: Optional[str] = ""

    @field_validator("code")
    @classmethod
    def null_code_is_empty(cls, v: Optional[str]) -> str:
        return v or ""


class StartGame(_Message):
    type: Literal["start_game"]


class SubmitQuestion(_Message):
    type: Literal["submit_question"]
    question: Optional[str] = ""

    @field_validator("question")
    @classmethod
    def null_question_is_empty(cls, v: Optional[str]) -> str:
        return v or ""


class SubmitAnswer(_Message):
    type: Literal["submit_answer"]
    answer: Optional[str] = ""

    @field_validator("answer")
    @classmethod
    def null_answer_is_empty(cls, v: Optional[str]) -> str:
        return v or ""


class NextReveal(_Message):
    type: Literal["next_reveal"]


class SubmitGuesses(_Message):
    type: Literal["submit_guesses"]
    guesses: Optional[Dict[str, Optional[str]]] = Field(default_factory=dict)

    @field_validator("guesses")
    @classmethod
    def drop_blank_guesses(cls, v: Optional[Dict[str, Optional[str]]]) -> Dict[str, str]:
        # A null entry means the guesser left that answer unassigned.
        return {answer_id: pid for answer_id, pid in (v or {}).items() if pid is not None}


class Vote(_Message):
    type: Literal["vote"]
    category: Literal["best", "funniest"]
    answer_id: str = Field(alias="answerId", min_length=1)


class NextTurn(_Message):
    type: Literal["next_turn"]


class PlayAgain(_Message):
    type: Literal["play_again"]


ClientMessage = Annotated[
    Union[CreateLobby, JoinLobby, StartGame, SubmitQuestion, SubmitAnswer,
          NextReveal, SubmitGuesses, Vote, NextTurn, PlayAgain],
    Field(discriminator="type"),
]

MESSAGE_TYPES = get_args(get_args(ClientMessage)[0])

_adapter: TypeAdapter = TypeAdapter(ClientMessage)


def parse_client_message(raw: str) -> Optional[BaseModel]:
    """Validate one JSON text payload; anything malformed yields None."""
    try:
        return _adapter.validate_json(raw)
    except ValidationError as exc:
        logger.debug("Dropping malformed message: %s", exc.errors(include_url=False))
        return None
