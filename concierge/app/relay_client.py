# =============================================================================
# Internal Relay Clients
# =============================================================================
# Used by processes that are not co-located with the API:
# - DispatchClient: producers (cron, channel workers) submit raw events
# - ResultRelayClient: Worker Loops push final results back to the API,
#   which forwards them to real-time clients and the audit log
#
# Both send the optional shared secret as X-Internal-Secret.
# =============================================================================

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional
import requests

logger = logging.getLogger(__name__)

SECRET_HEADER = "X-Internal-Secret"


@dataclass
class RelayConfig:
    """Configuration for relay clients."""
    api_base_url: str
    internal_secret: str = ""
    timeout: int = 30


class _RelayClient:

    def __init__(self, api_base_url: str, internal_secret: str = "", timeout: int = 30, session=None):
        self.config = RelayConfig(
            api_base_url=api_base_url.rstrip("/"),
            internal_secret=internal_secret,
            timeout=timeout,
        )
        self.session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.internal_secret:
            headers[SECRET_HEADER] = self.config.internal_secret
        return headers

    def _post(self, path: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """POST JSON; raises requests.exceptions.RequestException on transport or HTTP errors."""
        response = self.session.post(
            f"{self.config.api_base_url}{path}",
            headers=self._headers(),
            json=data,
            timeout=self.config.timeout,
        )
        if not response.ok:
            logger.warning(f"Relay {path} returned {response.status_code}: {response.text[:200]}")
        response.raise_for_status()
        return response.json()


class DispatchClient(_RelayClient):
    """Submit events to the API's internal dispatch endpoint."""

    def dispatch(self, raw: Dict[str, Any]) -> str:
        body = {
            "source": raw.get("source"),
            "type": raw.get("type"),
            "payload": raw.get("payload"),
        }
        if raw.get("priority") is not None:
            body["priority"] = raw["priority"]
        return self._post("/api/internal/dispatch", body)["id"]


class ResultRelayClient(_RelayClient):
    """Push a final textual result for an event back to the API."""

    def deliver(self, event_id: str, message: Dict[str, Any]) -> None:
        self._post("/api/internal/chat-result", {"eventId": event_id, "message": message})
        logger.info(f"Relayed result for event {event_id}")


def relay_clients_from_config(config: Dict[str, Any], session=None):
    """Build (DispatchClient, ResultRelayClient) from Deps.config."""
    kwargs = {
        "api_base_url": config["API_BASE_URL"],
        "internal_secret": config.get("INTERNAL_SECRET", ""),
        "session": session,
    }
    return DispatchClient(**kwargs), ResultRelayClient(**kwargs)
