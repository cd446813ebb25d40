"""Client for the external ticketing system (a spreadsheet-backed web app).

Responses are not guaranteed to be JSON: the service sometimes answers with
an HTML error page or plain text, so every parse is defensive.
"""

import json
from typing import Any, Optional

import httpx

from chatdesk.config import settings
from chatdesk.logging_config import get_logger
from chatdesk.services.result import Result

logger = get_logger("ticketing_client")

REFERENCE_KEYS = ("numero_chamado", "ticket_number", "reference", "id")


def _parse_json(body: str) -> Any:
    try:
        return json.loads(body)
    except (TypeError, ValueError):
        logger.warning(f"Ticketing response is not JSON: {body[:200]!r}")
        return None


def parse_options(payload: Any, options_key: Optional[str]) -> list[str]:
    """Option labels from ``{"<key>": [...]}`` or a bare list; anything else yields []."""
    items = payload
    if isinstance(payload, dict):
        items = payload.get(options_key) if options_key else None
        if items is None:
            items = next((value for value in payload.values() if isinstance(value, list)), None)
    if not isinstance(items, list):
        return []

    options = []
    for item in items:
        if isinstance(item, (str, int, float)) and not isinstance(item, bool):
            label = str(item).strip()
        elif isinstance(item, dict):
            label = str(item.get("label") or item.get("name") or item.get("value") or "").strip()
        else:
            label = ""
        if label:
            options.append(label)
    return options


def parse_reference(payload: Any) -> Optional[str]:
    if isinstance(payload, dict):
        for key in REFERENCE_KEYS:
            value = payload.get(key)
            if isinstance(value, (str, int)) and not isinstance(value, bool) and str(value).strip():
                return str(value).strip()
        nested = payload.get("data")
        if isinstance(nested, dict):
            return parse_reference(nested)
    return None


async def fetch_options(
    resource: str,
    options_key: Optional[str] = None,
    *,
    base_url: Optional[str] = None,
) -> Result[list[str]]:
    base_url = base_url or settings.ticketing_api_url
    if not base_url:
        return Result.failure("TICKETING_API_URL not configured", code="not_configured")

    try:
        async with httpx.AsyncClient(timeout=settings.http_timeout_seconds, follow_redirects=True) as client:
            response = await client.get(base_url, params={"action": resource})
    except httpx.HTTPError as e:
        logger.warning(f"Ticketing options request failed: {e}", extra={"context": {"resource": resource}})
        return Result.failure(str(e), code="request_failed")

    if not response.is_success:
        logger.warning(f"Ticketing options request returned {response.status_code}")
        return Result.failure(f"HTTP {response.status_code}", code="bad_status")

    options = parse_options(_parse_json(response.text), options_key or resource)
    if not options:
        return Result.failure("Empty option list", code="empty")
    logger.info(f"Fetched {len(options)} options for {resource}")
    return Result.success(options)


async def create_ticket(fields: dict, *, base_url: Optional[str] = None) -> Result[Optional[str]]:
    """Submit a ticket. Success carries the external reference, or None when it can't be parsed."""
    base_url = base_url or settings.ticketing_api_url
    if not base_url:
        return Result.failure("TICKETING_API_URL not configured", code="not_configured")

    try:
        async with httpx.AsyncClient(timeout=settings.http_timeout_seconds, follow_redirects=True) as client:
            response = await client.post(base_url, json=fields)
    except httpx.HTTPError as e:
        logger.warning(f"Ticket creation request failed: {e}")
        return Result.failure(str(e), code="request_failed")

    if not response.is_success:
        logger.warning(f"Ticket creation returned {response.status_code}: {response.text[:200]}")
        return Result.failure(f"HTTP {response.status_code}", code="bad_status")

    return Result.success(parse_reference(_parse_json(response.text)))
