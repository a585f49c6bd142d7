#!/usr/bin/env python3
"""
Google Air Quality point lookup
===============================
Supplementary source for pollutants the primary station feed does not report
(mostly O3 and NO2). One POST to currentConditions:lookup per grid point with
the POLLUTANT_CONCENTRATION extra computation.

The API key is injected from configuration, never hard-coded.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import aiohttp

from aqhi_backend.exceptions import InvalidConfiguration, UpstreamFetchFailure
from aqhi_backend.models import Concentration
from aqhi_backend.processors.concentration_normalizer import normalize_unit

logger = logging.getLogger(__name__)

GOOGLE_AIR_QUALITY_URL = "https://airquality.googleapis.com/v1/currentConditions:lookup"


def extract_pollutants(payload: Dict[str, Any]) -> Dict[str, Concentration]:
    """Pull {code: Concentration} out of a currentConditions response"""
    pollutants = {}

    for pollutant in payload.get('pollutants') or []:
        code = str(pollutant.get('code', '')).lower()
        concentration = pollutant.get('concentration') or {}
        value = concentration.get('value')
        unit = normalize_unit(concentration.get('units'))

        if not code or value is None or unit is None:
            continue
        pollutants[code] = Concentration(float(value), unit)

    return pollutants


class GoogleAirQualityClient:
    """
    Async client for the Google Air Quality API
    """

    def __init__(self, api_key: str, timeout_seconds: float = 15.0,
                 session: Optional[aiohttp.ClientSession] = None):
        if not api_key:
            raise InvalidConfiguration("GOOGLE_AIR_QUALITY_API_KEY is not configured")
        self.api_key = api_key
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session = session

    async def _post(self, session: aiohttp.ClientSession, body: Dict[str, Any]) -> Dict[str, Any]:
        async with session.post(GOOGLE_AIR_QUALITY_URL, params={'key': self.api_key}, json=body) as response:
            response.raise_for_status()
            return await response.json()

    async def lookup(self, latitude: float, longitude: float) -> Dict[str, Concentration]:
        """Current pollutant concentrations at a point"""
        body = {
            'location': {'latitude': latitude, 'longitude': longitude},
            'extraComputations': ['POLLUTANT_CONCENTRATION'],
            'languageCode': 'en',
        }

        try:
            if self._session is not None:
                payload = await self._post(self._session, body)
            else:
                async with aiohttp.ClientSession(timeout=self.timeout) as session:
                    payload = await self._post(session, body)
        except asyncio.TimeoutError as e:
            raise UpstreamFetchFailure(f"Google Air Quality timed out at {latitude},{longitude}") from e
        except aiohttp.ClientError as e:
            raise UpstreamFetchFailure(f"Google Air Quality error at {latitude},{longitude}: {e}") from e

        pollutants = extract_pollutants(payload)
        logger.info(
            f"🌐 Google data for {latitude},{longitude}: "
            + ", ".join(f"{code.upper()}={c.value} {c.unit}" for code, c in pollutants.items())
        )
        return pollutants
