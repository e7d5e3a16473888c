"""
REST client for the timing server.

Serves as the results-lookup collaborator of the best-run resolver: the
merged endpoint returns first and second run data for a whole class.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import aiohttp
from pydantic import ValidationError as PydanticValidationError

from .config import ApiConfig
from .errors import ResultsLookupError
from .validation import MergedResults, is_object

logger = logging.getLogger(__name__)


class C123ServerApi:
    """
    Thin aiohttp client for the ``/api`` endpoints.

    Every failure (HTTP status, timeout, connection error, malformed body)
    raises ResultsLookupError. Use as an async context manager or call
    ``close()`` when done.
    """

    def __init__(
        self,
        base_url: str,
        config: Optional[ApiConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.config = config or ApiConfig()
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "C123ServerApi":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.timeout)
            )
            self._owns_session = True
        return self._session

    async def _fetch(self, path: str) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            async with self._get_session().get(url) as response:
                if response.status != 200:
                    logger.warning(f"API request failed: {path} ({response.status})")
                    raise ResultsLookupError(f"{path} returned HTTP {response.status}")
                body = await response.json(content_type=None)
        except asyncio.TimeoutError as e:
            logger.warning(f"API request timed out: {path}")
            raise ResultsLookupError(f"{path} timed out", cause=e) from e
        except aiohttp.ClientError as e:
            logger.warning(f"API request failed: {path}: {e}")
            raise ResultsLookupError(f"{path} failed: {e}", cause=e) from e
        except (ValueError, RecursionError) as e:
            raise ResultsLookupError(f"{path} returned invalid JSON", cause=e) from e

        if not is_object(body):
            raise ResultsLookupError(f"{path} returned {type(body).__name__}, expected object")
        return body

    # Server status

    async def get_status(self) -> Dict[str, Any]:
        return await self._fetch("/api/status")

    async def get_xml_status(self) -> Dict[str, Any]:
        return await self._fetch("/api/xml/status")

    # Schedule / races

    async def get_schedule(self) -> List[Dict[str, Any]]:
        body = await self._fetch("/api/xml/schedule")
        races = body.get("schedule")
        return races if isinstance(races, list) else []

    async def get_race_info(self, race_id: str) -> Optional[Dict[str, Any]]:
        body = await self._fetch(f"/api/xml/races/{quote(race_id, safe='')}")
        race = body.get("race")
        return race if is_object(race) else None

    async def get_merged_results(self, race_id: str) -> MergedResults:
        """First and second run results for the class of ``race_id`` (either run)."""
        body = await self._fetch(f"/api/xml/races/{quote(race_id, safe='')}/results?merged=true")
        try:
            return MergedResults(**body)
        except PydanticValidationError as e:
            raise ResultsLookupError(f"Invalid merged results for {race_id}", cause=e) from e


__all__ = ["C123ServerApi"]
