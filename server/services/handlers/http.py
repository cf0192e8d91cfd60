"""HTTP node handler."""

import json
import time
from typing import Any, Dict

import httpx

from core.logging import get_logger

logger = get_logger(__name__)

BODY_METHODS = ('POST', 'PUT', 'PATCH', 'DELETE')


def _parse_headers(headers: Any) -> Dict[str, str]:
    if isinstance(headers, dict):
        return {str(k): str(v) for k, v in headers.items()}
    if not headers:
        return {}
    try:
        parsed = json.loads(headers)
    except json.JSONDecodeError:
        logger.warning("Ignoring malformed headers JSON")
        return {}
    return parsed if isinstance(parsed, dict) else {}


async def handle_http_request(
    node_id: str,
    node_type: str,
    parameters: Dict[str, Any],
    context: Dict[str, Any],
    default_timeout: float = 30.0,
) -> Dict[str, Any]:
    """Make an HTTP request.

    Parameters:
        url: request URL (required)
        method: HTTP method (default GET)
        headers: dict or JSON string
        body: dict/list sent as JSON, or a string (parsed as JSON when possible)
        timeout: seconds
        failOnError: raise on status >= 400 (default true)

    Returns STATUS_CODE, DATA and HEADERS so later steps can reference
    {{node_id.DATA.field}}.
    """
    start_time = time.time()

    method = str(parameters.get('method', 'GET')).upper()
    url = parameters.get('url', '')
    body = parameters.get('body')
    timeout = float(parameters.get('timeout', default_timeout))
    fail_on_error = parameters.get('failOnError', True) not in (False, 'false')

    if not url:
        raise ValueError("URL is required")

    kwargs: Dict[str, Any] = {
        'method': method,
        'url': url,
        'headers': _parse_headers(parameters.get('headers')),
    }
    if method in BODY_METHODS and body not in (None, ''):
        if isinstance(body, (dict, list)):
            kwargs['json'] = body
        else:
            try:
                kwargs['json'] = json.loads(body)
            except (TypeError, json.JSONDecodeError):
                kwargs['content'] = str(body)

    logger.info("[HTTP Request] Executing", node_id=node_id, method=method, url=url)

    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.request(**kwargs)
    except httpx.TimeoutException:
        raise TimeoutError(f"Request timed out after {timeout} seconds")

    try:
        response_data = response.json()
    except ValueError:
        response_data = response.text

    if fail_on_error and response.status_code >= 400:
        raise RuntimeError(f"{method} {url} returned HTTP {response.status_code}")

    logger.debug("[HTTP Request] Completed", node_id=node_id, status=response.status_code,
                 duration=round(time.time() - start_time, 3))
    return {
        "STATUS_CODE": response.status_code,
        "DATA": response_data,
        "HEADERS": dict(response.headers),
    }
