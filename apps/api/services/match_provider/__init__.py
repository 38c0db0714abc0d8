"""External match-history provider clients."""

from services.match_provider.riot import (
    MatchHistoryProvider,
    RiotMatchProvider,
    get_match_provider,
    parse_match_detail,
    regional_route,
)
from services.match_provider.types import (
    AccountIdentity,
    MalformedMatchPayloadError,
    MatchDetail,
    MatchProviderError,
    MatchProviderRateLimited,
)

__all__ = [
    "AccountIdentity",
    "MalformedMatchPayloadError",
    "MatchDetail",
    "MatchHistoryProvider",
    "MatchProviderError",
    "MatchProviderRateLimited",
    "RiotMatchProvider",
    "get_match_provider",
    "parse_match_detail",
    "regional_route",
]
