"""Match-history provider contracts."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


class MatchProviderError(RuntimeError):
    """Transient provider failure (timeout, transport error, 5xx). Retried next sweep."""


class MatchProviderRateLimited(MatchProviderError):
    def __init__(self, message: str, retry_after: Optional[float] = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class MalformedMatchPayloadError(MatchProviderError):
    """Provider answered 2xx with a body that does not match the expected shape."""


@dataclass(frozen=True)
class AccountIdentity:
    account_id: str
    puuid: str
    game_name: str
    tag_line: str
    server: str
    region: str


@dataclass(frozen=True)
class MatchDetail:
    match_id: str
    game_mode: str
    champion: str
    win: bool
    duration_secs: int
