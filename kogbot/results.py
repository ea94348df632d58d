"""Explicit outcomes for workflow and query operations.

Business failures are values, not exceptions: every operation returns either
``Ok(value)`` or ``Err(kind, message)``. An ``Ok`` never carries an error
message, and an ``Err`` always carries a kind.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar, Union

T = TypeVar("T")


class ErrorCategory(str, Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    PROVIDER = "provider"
    STORE = "store"


class ErrorKind(str, Enum):
    INVALID_USERNAME = "invalid_username"
    ALREADY_REGISTERED = "already_registered"
    PENDING_EXISTS = "pending_exists"
    NAME_TAKEN = "name_taken"
    ALREADY_DECIDED = "already_decided"
    NOT_REGISTERED = "not_registered"
    NO_PLAYERS = "no_players"
    TOO_MANY_PLAYERS = "too_many_players"
    NOT_FOUND = "not_found"
    PLAYER_NOT_FOUND = "player_not_found"
    EXTERNAL_DATA_UNAVAILABLE = "external_data_unavailable"
    STORE_UNAVAILABLE = "store_unavailable"

    @property
    def category(self) -> ErrorCategory:
        return _CATEGORIES[self]


_CATEGORIES = {
    ErrorKind.INVALID_USERNAME: ErrorCategory.VALIDATION,
    ErrorKind.ALREADY_REGISTERED: ErrorCategory.VALIDATION,
    ErrorKind.PENDING_EXISTS: ErrorCategory.VALIDATION,
    ErrorKind.NAME_TAKEN: ErrorCategory.VALIDATION,
    ErrorKind.ALREADY_DECIDED: ErrorCategory.VALIDATION,
    ErrorKind.NOT_REGISTERED: ErrorCategory.VALIDATION,
    ErrorKind.NO_PLAYERS: ErrorCategory.VALIDATION,
    ErrorKind.TOO_MANY_PLAYERS: ErrorCategory.VALIDATION,
    ErrorKind.NOT_FOUND: ErrorCategory.NOT_FOUND,
    ErrorKind.PLAYER_NOT_FOUND: ErrorCategory.NOT_FOUND,
    ErrorKind.EXTERNAL_DATA_UNAVAILABLE: ErrorCategory.PROVIDER,
    ErrorKind.STORE_UNAVAILABLE: ErrorCategory.STORE,
}

# Kinds that leave a user stuck until a moderator steps in.
_MODERATOR_KINDS = {ErrorKind.ALREADY_REGISTERED, ErrorKind.PENDING_EXISTS}


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T = None  # type: ignore[assignment]

    ok = True


@dataclass(frozen=True)
class Err:
    kind: ErrorKind
    message: str

    ok = False

    def __post_init__(self):
        if not isinstance(self.kind, ErrorKind):
            raise TypeError("Err.kind must be an ErrorKind")

    @property
    def category(self) -> ErrorCategory:
        return self.kind.category

    def user_hint(self) -> str:
        if self.kind in _MODERATOR_KINDS:
            return "Contact a moderator if this looks wrong."
        if self.category in (ErrorCategory.PROVIDER, ErrorCategory.STORE):
            return "Please try again later."
        return "Please check your input and try again."


Result = Union[Ok[T], Err]
