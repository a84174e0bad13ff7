# /flowbot/services/http_service.py

import httpx
import logging
import tenacity
from typing import Any, Dict, Optional

from flowbot.config.settings import settings
from flowbot.utils.metrics import external_calls_counter
from flowbot.workflows.errors import ExternalAPIError

# Outbound HTTP for api nodes and smart button actions. Transport errors are
# retried; anything that still fails surfaces as ExternalAPIError.

logger = logging.getLogger(__name__)


class ExternalApiClient:
    def __init__(self, http_client: Optional[httpx.AsyncClient] = None):
        self.http_client = http_client or httpx.AsyncClient(timeout=settings.http_timeout_seconds)

    @tenacity.retry(
        retry=tenacity.retry_if_exception_type((httpx.RequestError, httpx.TimeoutException)),
        stop=tenacity.stop_after_attempt(3),
        wait=tenacity.wait_exponential(multiplier=1, min=1, max=5),
        before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def _send(self, method: str, url: str, headers: Dict[str, str], body: Any) -> httpx.Response:
        kwargs: Dict[str, Any] = {"headers": headers}
        if body is not None and method not in ("GET", "DELETE"):
            kwargs["json"] = body
        return await self.http_client.request(method, url, **kwargs)

    async def request(self, method: str, url: str, headers: Optional[Dict[str, str]] = None,
                      body: Any = None, source: str = "api_node") -> Any:
        """Perform the call and return decoded JSON, or the raw text for non-JSON bodies."""
        method = (method or "GET").upper()
        try:
            response = await self._send(method, url, headers or {}, body)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            external_calls_counter.labels(source=source, status="http_error").inc()
            raise ExternalAPIError(f"{method} {url} returned {e.response.status_code}") from e
        except httpx.HTTPError as e:
            external_calls_counter.labels(source=source, status="transport_error").inc()
            raise ExternalAPIError(f"{method} {url} failed: {e}") from e
        except httpx.InvalidURL as e:
            # Rendered URLs can carry user input, e.g. a non-numeric port
            external_calls_counter.labels(source=source, status="invalid_url").inc()
            raise ExternalAPIError(f"{method} {url} is not a valid URL: {e}") from e

        external_calls_counter.labels(source=source, status="success").inc()
        logger.info(f"External {method} {url} -> {response.status_code}")
        try:
            return response.json()
        except ValueError:
            return response.text

    async def close(self):
        await self.http_client.aclose()


external_api_client = ExternalApiClient()
