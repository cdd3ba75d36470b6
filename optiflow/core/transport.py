"""
Outbound HTTP transport shared by the automation client and webhooks.
JSON POST with bearer auth and identifying headers; classifies responses
into success / permanent (4xx) / transient (everything else).
"""

import json
import logging

import requests

from optiflow.core.constants import (
    APP_VERSION, ErrorCode, HEADER_VERSION, HEADER_SITE, DEFAULT_HTTP_TIMEOUT_SEC,
)
from optiflow.core.error_codes import TransientDeliveryError, PermanentDeliveryError

logger = logging.getLogger(__name__)


def build_headers(api_key: str | None = None, site_url: str | None = None,
                  include_api_key_header: bool = False) -> dict:
    headers = {
        "Content-Type": "application/json",
        HEADER_VERSION: APP_VERSION,
    }
    if site_url:
        headers[HEADER_SITE] = site_url
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
        if include_api_key_header:
            headers["X-API-Key"] = api_key
    return headers


def is_success(status_code: int) -> bool:
    return 200 <= status_code < 300


def is_client_error(status_code: int) -> bool:
    return 400 <= status_code < 500


class HttpTransport:
    """Thin wrapper over a ``requests.Session``."""

    def __init__(self, session: requests.Session | None = None,
                 timeout: int = DEFAULT_HTTP_TIMEOUT_SEC,
                 api_key: str | None = None,
                 site_url: str | None = None,
                 include_api_key_header: bool = False):
        self.session = session or requests.Session()
        self.timeout = timeout
        self.api_key = api_key
        self.site_url = site_url
        self.include_api_key_header = include_api_key_header

    def post(self, url: str, payload: dict) -> requests.Response:
        """POST ``payload`` as JSON and return the raw response.

        Network-level failures raise TransientDeliveryError; HTTP status
        codes are left for the caller to interpret.
        """
        headers = build_headers(self.api_key, self.site_url, self.include_api_key_header)
        try:
            return self.session.post(
                url,
                data=json.dumps(payload, default=str),
                headers=headers,
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout:
            raise TransientDeliveryError(f"Request to {url} timed out",
                                         code=ErrorCode.DELIVERY_TIMEOUT)
        except requests.exceptions.ConnectionError:
            raise TransientDeliveryError(f"Network error connecting to {url}",
                                         code=ErrorCode.NETWORK_TRANSIENT)
        except requests.exceptions.RequestException as e:
            raise TransientDeliveryError(f"Request to {url} failed: {e}")

    def post_json(self, url: str, payload: dict) -> requests.Response:
        """POST and raise on any non-2xx response."""
        resp = self.post(url, payload)
        if is_success(resp.status_code):
            return resp

        # Never echo credentials; body is truncated for the error column
        body = resp.text[:300] if resp.text else "No response body"
        message = f"{url} returned {resp.status_code}: {body}"
        if is_client_error(resp.status_code):
            raise PermanentDeliveryError(message, status_code=resp.status_code)
        raise TransientDeliveryError(message, status_code=resp.status_code)
