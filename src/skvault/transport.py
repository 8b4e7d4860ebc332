"""
HTTP transport for talking to the managed vault service.

Injectable so tests can route requests into an in-process server
instead of the network. Every call has a bounded timeout, and a timeout
is reported as a TransferError, never as a partial success.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

import requests

from .errors import TransferError

logger = logging.getLogger("skvault.transport")


class Transport(ABC):
    """Moves one JSON request/response pair."""

    @abstractmethod
    def request(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        payload: Optional[dict[str, Any]] = None,
        timeout: float = 10.0,
    ) -> tuple[int, dict[str, Any]]:
        """Send a request and return (status code, decoded JSON body).

        Raises:
            TransferError: On network failure, timeout, or a non-JSON body.
        """


class RequestsTransport(Transport):
    """Production transport backed by a ``requests`` session."""

    def __init__(self, session: Optional[requests.Session] = None) -> None:
        self.session = session or requests.Session()

    def request(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        payload: Optional[dict[str, Any]] = None,
        timeout: float = 10.0,
    ) -> tuple[int, dict[str, Any]]:
        try:
            resp = self.session.request(
                method,
                url,
                headers=headers,
                json=payload,
                timeout=timeout,
            )
        except requests.Timeout as exc:
            raise TransferError(f"{method} {url} timed out after {timeout}s") from exc
        except requests.RequestException as exc:
            raise TransferError(f"{method} {url} failed: {exc}") from exc

        try:
            body = resp.json() if resp.content else {}
        except ValueError as exc:
            raise TransferError(f"{method} {url} returned non-JSON body") from exc
        if not isinstance(body, dict):
            raise TransferError(f"{method} {url} returned unexpected JSON")
        logger.debug("%s %s -> %d", method, url, resp.status_code)
        return resp.status_code, body
