"""Shared HTTP helpers used by the registry catalogs.

Encapsulates request/timeout error handling so catalogs only see the typed
``NetworkError`` / ``NotFound`` failures. Retries live one level up, at the
catalog boundary (see ``registry.catalog``).
"""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional, Tuple

import requests

from constants import Constants
from common.errors import NetworkError, NotFound
from common.logging_utils import extra_context, is_debug_enabled, safe_url, Timer

logger = logging.getLogger(__name__)


def robust_get(
    url: str,
    *,
    headers: Optional[Dict[str, str]] = None,
    **kwargs: Any
) -> requests.Response:
    """Perform one GET request with DEBUG traces and typed failures.

    Raises:
        NotFound: The server answered 404 or 410.
        NetworkError: Timeout, connection failure or a 5xx/429 status.
    """
    safe_target = safe_url(url)
    with Timer() as t:
        if is_debug_enabled(logger):
            logger.debug(
                "HTTP request",
                extra=extra_context(
                    event="http_request",
                    component="http_client",
                    action="GET",
                    target=safe_target,
                )
            )
        try:
            response = requests.get(
                url,
                timeout=Constants.REQUEST_TIMEOUT,
                headers=headers,
                **kwargs
            )
        except requests.Timeout as exc:
            raise NetworkError(
                f"GET {safe_target} timed out after {Constants.REQUEST_TIMEOUT} seconds"
            ) from exc
        except requests.RequestException as exc:  # includes ConnectionError
            raise NetworkError(f"GET {safe_target} failed: {exc}") from exc

        if is_debug_enabled(logger):
            logger.debug(
                "HTTP response",
                extra=extra_context(
                    event="http_response",
                    component="http_client",
                    action="GET",
                    status_code=response.status_code,
                    duration_ms=t.duration_ms(),
                    target=safe_target,
                )
            )

    if response.status_code in (404, 410):
        raise NotFound(f"GET {safe_target} returned {response.status_code}")
    if response.status_code == 429 or response.status_code >= 500:
        raise NetworkError(f"GET {safe_target} returned {response.status_code}")
    if response.status_code >= 400:
        raise NotFound(f"GET {safe_target} returned {response.status_code}")
    return response


def get_json(
    url: str,
    *,
    headers: Optional[Dict[str, str]] = None,
    **kwargs: Any
) -> Tuple[int, Dict[str, str], Any]:
    """Perform GET request and parse the JSON response.

    Args:
        url: Target URL
        headers: Optional request headers
        **kwargs: Additional requests.get parameters

    Returns:
        Tuple of (status_code, headers_dict, parsed_json)

    Raises:
        NetworkError: Transport failure or undecodable body.
        NotFound: Missing resource.
    """
    merged = {"Accept": "application/json"}
    merged.update(headers or {})
    response = robust_get(url, headers=merged, **kwargs)
    try:
        parsed = json.loads(response.text)
    except json.JSONDecodeError as exc:
        if is_debug_enabled(logger):
            logger.debug(
                "JSON decode error",
                extra=extra_context(
                    event="parse",
                    component="http_client",
                    action="get_json",
                    outcome="json_decode_error",
                    status_code=response.status_code,
                    target=safe_url(url)
                )
            )
        raise NetworkError(f"Invalid JSON from {safe_url(url)}") from exc
    return response.status_code, dict(response.headers), parsed


def get_bytes(url: str, **kwargs: Any) -> bytes:
    """Download a response body."""
    return robust_get(url, **kwargs).content
