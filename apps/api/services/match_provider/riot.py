"""Riot Games match-history client (account-v1 and match-v5)."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from config import require_riot_api_key, settings
from services.match_provider.types import (
    AccountIdentity,
    MalformedMatchPayloadError,
    MatchDetail,
    MatchProviderError,
    MatchProviderRateLimited,
)

logger = logging.getLogger(__name__)


SERVER_REGIONAL_ROUTES = {
    "NA": "americas",
    "LAN": "americas",
    "LAS": "americas",
    "BR": "americas",
    "OCE": "americas",
    "EUW": "europe",
    "EUNE": "europe",
    "TR": "europe",
    "RU": "europe",
    "KR": "asia",
    "JP": "asia",
    "PH": "sea",
    "SG": "sea",
    "TW": "sea",
    "TH": "sea",
    "VN": "sea",
}
DEFAULT_REGIONAL_ROUTE = "americas"
MAX_MATCH_IDS_PER_CALL = 100


def regional_route(server: Optional[str]) -> str:
    """Map an account's home server to the Riot regional routing value."""
    return SERVER_REGIONAL_ROUTES.get(str(server or "").strip().upper(), DEFAULT_REGIONAL_ROUTE)


class MatchHistoryProvider(ABC):
    @abstractmethod
    async def list_match_ids(self, identity: AccountIdentity, *, start_time: int, count: int) -> List[str]:
        raise NotImplementedError

    @abstractmethod
    async def fetch_match_detail(self, identity: AccountIdentity, match_id: str) -> MatchDetail:
        raise NotImplementedError

    @abstractmethod
    async def resolve_puuid(self, *, game_name: str, tag_line: str, server: str) -> Optional[str]:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class RiotMatchProvider(MatchHistoryProvider):
    """Thin async client; every call carries its own timeout and fails in isolation."""

    def __init__(
        self,
        api_key: str,
        *,
        timeout_seconds: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds))
        self._headers = {"X-Riot-Token": api_key}
        self._timeout = timeout_seconds

    async def __aenter__(self) -> "RiotMatchProvider":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _get_json(self, url: str, params: Optional[Dict[str, Any]] = None) -> Any:
        try:
            response = await self._client.get(url, params=params, headers=self._headers, timeout=self._timeout)
        except (httpx.TimeoutException, asyncio.TimeoutError) as exc:
            raise MatchProviderError(f"Riot request timed out: {url}") from exc
        except httpx.HTTPError as exc:
            raise MatchProviderError(f"Riot transport error for {url}: {exc}") from exc

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            try:
                retry_seconds = float(retry_after) if retry_after is not None else None
            except ValueError:
                retry_seconds = None
            raise MatchProviderRateLimited(f"Riot rate limit hit for {url}", retry_after=retry_seconds)
        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise MatchProviderError(f"Riot error {response.status_code} for {url}: {response.text[:200]}")

        try:
            return response.json()
        except ValueError as exc:
            raise MalformedMatchPayloadError(f"Riot returned non-JSON body for {url}") from exc

    async def list_match_ids(self, identity: AccountIdentity, *, start_time: int, count: int) -> List[str]:
        url = (
            f"https://{identity.region}.api.riotgames.com"
            f"/lol/match/v5/matches/by-puuid/{quote(identity.puuid, safe='')}/ids"
        )
        bounded = max(1, min(int(count), MAX_MATCH_IDS_PER_CALL))
        payload = await self._get_json(url, params={"startTime": int(start_time), "count": bounded})
        if payload is None:
            return []
        if not isinstance(payload, list) or not all(isinstance(item, str) for item in payload):
            raise MalformedMatchPayloadError(f"Unexpected match id list for puuid {identity.puuid}")
        return payload

    async def fetch_match_detail(self, identity: AccountIdentity, match_id: str) -> MatchDetail:
        url = f"https://{identity.region}.api.riotgames.com/lol/match/v5/matches/{quote(match_id, safe='')}"
        payload = await self._get_json(url)
        return parse_match_detail(match_id, payload, puuid=identity.puuid)

    async def resolve_puuid(self, *, game_name: str, tag_line: str, server: str) -> Optional[str]:
        region = regional_route(server)
        url = (
            f"https://{region}.api.riotgames.com/riot/account/v1/accounts/by-riot-id/"
            f"{quote(game_name, safe='')}/{quote(tag_line, safe='')}"
        )
        payload = await self._get_json(url)
        if payload is None:
            return None
        if not isinstance(payload, dict):
            raise MalformedMatchPayloadError(f"Unexpected account payload for {game_name}#{tag_line}")
        puuid = str(payload.get("puuid") or "").strip()
        return puuid or None


def parse_match_detail(match_id: str, payload: Any, *, puuid: str) -> MatchDetail:
    """Coerce a match-v5 detail body into a MatchDetail for the given participant."""
    info = payload.get("info") if isinstance(payload, dict) else None
    if not isinstance(info, dict):
        raise MalformedMatchPayloadError(f"Match {match_id} payload is missing 'info'")

    participants = info.get("participants")
    player: Dict[str, Any] = {}
    if isinstance(participants, list):
        for row in participants:
            if isinstance(row, dict) and row.get("puuid") == puuid:
                player = row
                break

    try:
        duration = int(info.get("gameDuration") or 0)
    except (TypeError, ValueError) as exc:
        raise MalformedMatchPayloadError(f"Match {match_id} has a non-numeric gameDuration") from exc

    return MatchDetail(
        match_id=match_id,
        game_mode=str(info.get("gameMode") or "UNKNOWN"),
        champion=str(player.get("championName") or "Unknown"),
        win=bool(player.get("win", False)),
        duration_secs=max(duration, 0),
    )


def get_match_provider() -> RiotMatchProvider:
    """Build a provider from settings; raises ValueError when RIOT_API_KEY is missing."""
    return RiotMatchProvider(
        require_riot_api_key(),
        timeout_seconds=float(settings.RIOT_API_TIMEOUT_SECONDS),
    )
