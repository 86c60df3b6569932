"""Multi-model chat turn orchestration."""

from .abort import AbortController, CancellationToken
from .state import ChatStore, RequestOptions, TokenStats, Turn, TurnStatus

__all__ = [
    "AbortController",
    "CancellationToken",
    "ChatStore",
    "RequestOptions",
    "TokenStats",
    "Turn",
    "TurnStatus",
]
