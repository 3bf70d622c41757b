#!/usr/bin/env python3
"""
REST transport for the TrueNAS v2.0 API.

Stateless: every call is one HTTP request on a shared requests.Session that
carries the bearer token.
"""

import logging
from typing import Any, Dict, Optional

import requests
import urllib3

from truenas_block.errors import RemoteCallError, TransientNetworkError

logger = logging.getLogger(__name__)


class RestTransport:
    """HTTP client for {scheme}://host:port/api/v2.0."""

    name = 'rest'

    def __init__(self, host: str, port: int, api_key: str, scheme: str = 'https',
                 base_path: str = '/api/v2.0', timeout: float = 30.0, verify_ssl: bool = True) -> None:
        if not api_key:
            raise ValueError("TrueNAS API key is required")

        self.host = host
        self.port = port
        self.scheme = scheme
        self.timeout = timeout
        url_host = f"[{host}]" if ':' in host and not host.startswith('[') else host
        self.api_url = f"{scheme}://{url_host}:{port}{base_path}"

        self.session: Optional[requests.Session] = requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        })

        # Self-signed appliance certificates are common
        self.session.verify = verify_ssl
        if not verify_ssl:
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

        logger.debug(f"REST session set up for {self.api_url}")

    def request(self, verb: str, path: str, payload: Any = None,
                params: Optional[Dict[str, Any]] = None) -> Any:
        """
        Perform one request and return the decoded JSON body.

        Raises:
            RemoteCallError: for any non-2xx response
            TransientNetworkError: when the request did not complete
        """
        if self.session is None:
            raise TransientNetworkError(f"REST session to {self.host} is closed")

        url = f"{self.api_url}/{path.lstrip('/')}"
        try:
            response = self.session.request(
                verb.upper(), url,
                json=payload,
                params=params,
                timeout=self.timeout,
            )
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            raise TransientNetworkError(f"{verb.upper()} {path}: {e}", url=url) from e

        if not response.ok:
            raise RemoteCallError(
                self._error_text(response),
                status=response.status_code,
                method=f"{verb.upper()} /{path.lstrip('/')}",
            )

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    @staticmethod
    def _error_text(response: requests.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text.strip() or response.reason or 'HTTP error'
        if isinstance(body, dict):
            for field in ('message', 'error', 'reason'):
                if body.get(field):
                    return str(body[field])
        return str(body)

    def is_alive(self) -> bool:
        # Each request is independent; nothing to probe
        return self.session is not None

    def close(self) -> None:
        if self.session is not None:
            self.session.close()
            self.session = None
