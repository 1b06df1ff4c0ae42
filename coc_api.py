"""Clash of Clans API client with caching and rate limiting."""
import asyncio
import logging
import urllib.parse
from typing import Optional, Dict, Any

import aiohttp

from config import (
    COC_API_KEYS, COC_API_BASE_URL, COC_CONCURRENCY, COC_TIMEOUT,
    CLAN_CACHE_TTL, WAR_CACHE_TTL, LEAGUE_CACHE_TTL
)
from cache import APICache, RequestDeduplicator, NOT_FOUND
from errors import EpisodeNotFound, TransientFetchError

logger = logging.getLogger(__name__)

# Statuses worth retrying with the next key (403 is returned for keys bound to another IP)
RETRY_WITH_NEXT_KEY = {403, 429, 500, 502, 503, 504}


class COCAPI:
    """
    Clash of Clans API client with caching and request deduplication.

    Every method either returns a decoded JSON payload or raises:
    EpisodeNotFound for a 404 (the resource authoritatively does not exist),
    TransientFetchError for anything else (timeouts, rate limits, 5xx, bad keys).
    """

    def __init__(self, http_session: aiohttp.ClientSession, api_keys: Optional[Dict[str, str]] = None,
                 base_url: str = COC_API_BASE_URL):
        self.session = http_session
        self.api_keys = api_keys if api_keys is not None else COC_API_KEYS
        self.base_url = base_url
        self.semaphore = asyncio.Semaphore(COC_CONCURRENCY)
        self.cache = APICache()
        self.deduplicator = RequestDeduplicator()

    async def _make_request(self, path: str, cache_key: Optional[str] = None,
                            ttl: float = 60.0) -> Dict[str, Any]:
        """
        Make an API request with caching and deduplication.

        Args:
            path: API endpoint path (e.g., "/clans/%23TAG")
            cache_key: Optional cache key (defaults to path)
            ttl: Cache TTL in seconds
        """
        if not self.api_keys:
            raise TransientFetchError("no Clash of Clans API key configured")

        cache_key = cache_key or path

        cached = self.cache.get(cache_key, ttl)
        if cached is NOT_FOUND:
            raise EpisodeNotFound(f"{path} not found")
        if cached is not None:
            return cached

        async def _fetch():
            url = f"{self.base_url}{path}"
            last_status = None
            async with self.semaphore:
                # try keys in order, stop on first success
                for label, key in self.api_keys.items():
                    headers = {"Authorization": f"Bearer {key}"}
                    try:
                        async with self.session.get(url, headers=headers,
                                                    timeout=aiohttp.ClientTimeout(total=COC_TIMEOUT)) as resp:
                            if resp.status == 200:
                                data = await resp.json()
                                self.cache.set(cache_key, data)
                                return data
                            if resp.status == 404:
                                # Cache 404s briefly to avoid repeated requests
                                self.cache.set(cache_key, NOT_FOUND)
                                raise EpisodeNotFound(f"{path} not found")
                            last_status = resp.status
                            if resp.status not in RETRY_WITH_NEXT_KEY:
                                break
                            logger.debug("[API] %s returned %s with key %s", path, resp.status, label)
                    except asyncio.TimeoutError:
                        logger.debug("[API] Timeout on %s with key %s", path, label)
                        continue
                    except aiohttp.ClientError as e:
                        logger.debug("[API] Client error on %s with key %s: %s", path, label, e)
                        continue
            logger.warning("[API] All keys failed for %s (last status %s)", path, last_status)
            raise TransientFetchError(f"request to {path} failed", status=last_status)

        return await self.deduplicator.get_or_create(cache_key, _fetch)

    @staticmethod
    def _quote(tag: str) -> str:
        return urllib.parse.quote(tag, safe="")

    async def get_clan(self, clan_tag: str) -> Dict[str, Any]:
        """Get clan information, including clanCapital districts."""
        path = f"/clans/{self._quote(clan_tag)}"
        return await self._make_request(path, cache_key=f"clan:{clan_tag}", ttl=CLAN_CACHE_TTL)

    async def get_current_war(self, clan_tag: str) -> Dict[str, Any]:
        """Get current war information. A clan not in war comes back with state ``notInWar``."""
        path = f"/clans/{self._quote(clan_tag)}/currentwar"
        return await self._make_request(path, cache_key=f"war:{clan_tag}", ttl=WAR_CACHE_TTL)

    async def get_league_group(self, clan_tag: str) -> Dict[str, Any]:
        """Get the current CWL group. 404 outside league week."""
        path = f"/clans/{self._quote(clan_tag)}/currentwar/leaguegroup"
        return await self._make_request(path, cache_key=f"league:{clan_tag}", ttl=LEAGUE_CACHE_TTL)

    async def get_league_war(self, war_tag: str) -> Dict[str, Any]:
        path = f"/clanwarleagues/wars/{self._quote(war_tag)}"
        return await self._make_request(path, cache_key=f"leaguewar:{war_tag}", ttl=WAR_CACHE_TTL)

    async def get_capital_raid_seasons(self, clan_tag: str, limit: int = 1) -> Dict[str, Any]:
        """Get the latest capital raid seasons (``items`` newest first)."""
        path = f"/clans/{self._quote(clan_tag)}/capitalraidseasons?limit={limit}"
        return await self._make_request(path, cache_key=f"raid:{clan_tag}:{limit}", ttl=CLAN_CACHE_TTL)

    def invalidate_clan_cache(self, clan_tag: str) -> None:
        """Invalidate all cache entries for a clan."""
        for prefix in ("clan", "war", "league", "raid"):
            self.cache.invalidate_prefix(f"{prefix}:{clan_tag}")
