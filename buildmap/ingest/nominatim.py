"""
Nominatim geocoding client.

No account required - uses the public Nominatim search endpoint.
Rate-limited to be respectful to public infrastructure: one request per
``request_delay`` seconds, and cached responses never hit the network.
"""

from __future__ import annotations

import time
from typing import Any, Callable, Optional

import requests

from ..core.config import Settings
from ..utils.logging_config import get_logger
from ..utils.retry import RetryConfig, RetryableRequest
from .cache import ResponseCache

logger = get_logger(__name__)


class NominatimClient:
    """
    Free-text address search against Nominatim.

    ``search`` returns the exact JSON list the service produced (possibly
    empty), or None when the request failed for good.
    """

    def __init__(
        self,
        cache: ResponseCache,
        request: RetryableRequest,
        base_url: str = "https://nominatim.openstreetmap.org/search",
        user_agent: str = "buildmap/0.1",
        accept_language: str = "en",
        limit: int = 5,
        request_delay: float = 1.1,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.cache = cache
        self.request = request
        self.base_url = base_url
        self.user_agent = user_agent
        self.accept_language = accept_language
        self.limit = limit
        self.request_delay = request_delay
        self._sleep = sleep
        self.live_requests = 0

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session: Optional[requests.Session] = None,
        cache: Optional[ResponseCache] = None,
    ) -> "NominatimClient":
        retry = RetryConfig(
            max_retries=settings.max_retries,
            base_delay=settings.retry_base_delay_s,
            max_delay=settings.retry_max_delay_s,
        )
        return cls(
            cache=cache if cache is not None else ResponseCache(settings.geocode_cache_path),
            request=RetryableRequest(retry, session=session, timeout=settings.request_timeout_s),
            base_url=settings.nominatim_url,
            user_agent=settings.user_agent,
            accept_language=settings.accept_language,
            limit=settings.geocode_result_limit,
            request_delay=settings.geocode_delay_s,
        )

    def search(self, query: str) -> Optional[list[dict[str, Any]]]:
        """Geocode one free-text query, reading through the cache."""
        cached = self.cache.get(query)
        if cached is not None:
            logger.debug("Geocode cache hit", extra={"query": query})
            return cached

        params = {
            "q": query,
            "format": "jsonv2",
            "limit": self.limit,
            "addressdetails": 0,
        }
        headers = {
            "User-Agent": self.user_agent,
            "Accept-Language": self.accept_language,
        }

        try:
            logger.info("Geocoding", extra={"query": query})
            response = self.request.get(self.base_url, params=params, headers=headers)
            payload = response.json()
        except requests.RequestException as e:
            logger.warning(
                f"Geocoding request failed: {e}",
                extra={
                    "query": query,
                    "attempts": getattr(e, "attempts", 1),
                    "error_type": type(e).__name__,
                },
            )
            return None
        except ValueError as e:
            logger.warning(f"Geocoding returned invalid JSON: {e}", extra={"query": query})
            return None
        finally:
            self.live_requests += 1
            self._sleep(self.request_delay)

        if not isinstance(payload, list):
            logger.warning("Geocoding returned an unexpected payload", extra={"query": query})
            return None

        self.cache.put(query, payload)
        return payload
