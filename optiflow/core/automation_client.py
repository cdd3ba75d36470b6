"""
Client for the external workflow-automation service that performs the
actual optimization. One POST per job; the JSON response is the job
result.
"""

import json
import logging

from optiflow.core.constants import AUTOMATION_OPTIMIZE_PATH, ErrorCode
from optiflow.core.error_codes import TransientDeliveryError, PermanentDeliveryError
from optiflow.core.transport import HttpTransport, is_success, is_client_error

logger = logging.getLogger(__name__)


def optimize_endpoint(base_url: str) -> str:
    return f"{base_url.rstrip('/')}/{AUTOMATION_OPTIMIZE_PATH}"


class AutomationClient:

    def __init__(self, base_url: str, transport: HttpTransport):
        self.base_url = base_url
        self.transport = transport

    @property
    def endpoint(self) -> str:
        return optimize_endpoint(self.base_url)

    def optimize(self, request: dict) -> dict:
        """Send one optimization request; returns the decoded JSON result.

        Raises PermanentDeliveryError on 4xx and TransientDeliveryError on
        timeouts, network errors, other non-2xx codes and unparseable bodies.
        """
        if not self.base_url:
            raise PermanentDeliveryError("No automation service URL configured")

        resp = self.transport.post_json(self.endpoint, request)

        try:
            result = resp.json()
        except (json.JSONDecodeError, ValueError):
            raise TransientDeliveryError("Invalid response from automation service",
                                         status_code=resp.status_code)
        if not isinstance(result, dict) or not result:
            raise TransientDeliveryError("Invalid response from automation service",
                                         status_code=resp.status_code)
        return result

    def verify(self) -> tuple[bool, str]:
        """Lightweight reachability check. Returns (success, message)."""
        if not self.base_url:
            return False, "No automation service URL configured"
        try:
            resp = self.transport.post(self.endpoint, {"test": True})
        except TransientDeliveryError as e:
            if e.code == ErrorCode.DELIVERY_TIMEOUT:
                return False, "Network error: request timed out"
            return False, "Network error: could not reach automation service"
        if is_success(resp.status_code):
            return True, "Automation service reachable"
        if is_client_error(resp.status_code):
            return False, f"Rejected by automation service ({resp.status_code})"
        return False, f"Unexpected response: {resp.status_code}"
