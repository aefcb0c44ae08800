"""Outcome types returned by handler operations."""
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Union

from .jsonrpc.models import JSONRPCError


class _Keep:
    """Sentinel: the handler did not supply new state."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "KEEP"


KEEP: Any = _Keep()

ErrorObject = Union[JSONRPCError, Mapping[str, Any], Dict[str, Any]]


@dataclass(frozen=True)
class Success:
    """The operation produced ``value``; ``state`` replaces the handler state."""

    value: Any = None
    state: Any = KEEP


@dataclass(frozen=True)
class Failure:
    """The handler declared an error, passed to the client unchanged.

    ``state`` is still committed, since a handler may have advanced its state
    before detecting the error.
    """

    error: ErrorObject
    state: Any = KEEP


@dataclass(frozen=True)
class NoReply:
    """State update without a reply. Only valid from optional operations."""

    state: Any = KEEP


@dataclass(frozen=True)
class Stop:
    """Refuse to start the session. Only valid from ``init``."""

    reason: Any = None


Outcome = Union[Success, Failure, NoReply, Stop]


def carries_state(outcome: Any) -> bool:
    """True if the outcome supplies a replacement handler state."""
    return isinstance(outcome, (Success, Failure, NoReply)) and outcome.state is not KEEP
