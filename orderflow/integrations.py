"""
Outbound HTTP helper shared by channel clients and carrier adapters.
Turns transport problems and HTTP status codes into retryable / terminal failures.
"""
import logging

import httpx

from orderflow.errors import RetryableIntegrationFailure, TerminalIntegrationFailure

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = {408, 425, 429}


def is_retryable_status(status_code: int) -> bool:
    return status_code in RETRYABLE_STATUS or status_code >= 500


async def send(client: httpx.AsyncClient, method: str, url: str, *, service: str, **kwargs) -> httpx.Response:
    try:
        response = await client.request(method, url, **kwargs)
    except httpx.TimeoutException as e:
        logger.warning("%s %s %s timed out: %s", service, method, url, e)
        raise RetryableIntegrationFailure(f"{service} request timed out")
    except httpx.TransportError as e:
        logger.warning("%s %s %s transport error: %s", service, method, url, e)
        raise RetryableIntegrationFailure(f"{service} unreachable: {e}")

    if response.status_code >= 400:
        detail = response.text[:500]
        if is_retryable_status(response.status_code):
            logger.warning("%s %s %s -> %d (retryable)", service, method, url, response.status_code)
            raise RetryableIntegrationFailure(
                f"{service} returned {response.status_code}: {detail}", status_code=response.status_code
            )
        logger.error("%s %s %s -> %d: %s", service, method, url, response.status_code, detail)
        raise TerminalIntegrationFailure(
            f"{service} rejected request ({response.status_code}): {detail}", status_code=response.status_code
        )
    return response
