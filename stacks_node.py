"""
HTTP helpers for talking to a Stacks node's RPC API.

Only transport problems are turned into NodeUnreachable here. Responses the
node actually produced, including error statuses, are handed back to the
caller, which decides how to classify them.
"""

from __future__ import annotations

import logging
from typing import Any

import requests

from pox_errors import NodeUnreachable, ProtocolMismatch

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10


def node_url(base_url: str, path: str) -> str:
    return f"{base_url.rstrip('/')}{path}"


def node_get(
    base_url: str,
    path: str,
    params: dict | None = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> Any:
    """GET a JSON document from the node; any failure is a transport failure."""
    url = node_url(base_url, path)
    logger.debug("GET %s", url)
    try:
        resp = requests.get(url, params=params, timeout=timeout)
        resp.raise_for_status()
    except requests.RequestException as exc:
        raise NodeUnreachable(url, str(exc)) from exc
    return response_json(resp)


def node_post(
    base_url: str,
    path: str,
    json_body: Any = None,
    data: bytes | None = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> requests.Response:
    """
    POST to the node and return the raw response.

    JSON bodies are sent with an explicit application/json content type;
    ``data`` is sent as application/octet-stream. Non-2xx responses are
    returned, not raised.
    """
    url = node_url(base_url, path)
    logger.debug("POST %s", url)
    try:
        if data is not None:
            return requests.post(
                url,
                data=data,
                headers={"Content-Type": "application/octet-stream"},
                timeout=timeout,
            )
        return requests.post(
            url,
            json=json_body,
            headers={"Content-Type": "application/json"},
            timeout=timeout,
        )
    except requests.RequestException as exc:
        raise NodeUnreachable(url, str(exc)) from exc


def response_json(resp: requests.Response) -> Any:
    """Decode the JSON body of a node response."""
    try:
        return resp.json()
    except ValueError as exc:
        raise ProtocolMismatch(
            f"Non-JSON response from {resp.url}: {resp.text[:200]}"
        ) from exc
