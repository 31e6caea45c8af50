"""
HTTP Cloud Adapter

Adapter for vendor cloud bridges that expose a small REST surface:

    GET  {base_url}/devices                       -> {"devices": [device, ...]}
    GET  {base_url}/devices/{id}                  -> device
    POST {base_url}/devices/{id}/commands         -> device, or an acknowledgement

where ``device`` is ``{"id", "kind", "online", "state": {...}}``.
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime
from typing import TYPE_CHECKING, Any, Iterable, Mapping

import requests

from app.domain.device_state import DeviceSnapshot, payload_from_dict
from app.enums.access import DeviceKind
from app.hardware.adapters.base_adapter import AdapterError, DeviceAdapter
from app.utils.time import coerce_datetime, utc_now

if TYPE_CHECKING:
    from app.domain.hierarchy import Device
    from app.domain.operations import DeviceCommand
    from app.security.credentials import CredentialProvider

logger = logging.getLogger(__name__)

_REJECTED_STATUSES = {400, 404, 409, 422}
_AUTH_STATUSES = {401, 403}


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        when = coerce_datetime(value)
        if when is None:
            return None
        return max(0.0, (when - utc_now()).total_seconds())


class HTTPCloudAdapter(DeviceAdapter):
    """
    Vendor REST adapter built on ``requests``.

    Maps transport and HTTP failures into ``AdapterErrorKind``:
    401/403 → one transparent credential refresh, then ``auth_expired``;
    429 → ``rate_limited``; 400/404/409/422 → ``rejected``; 5xx, timeouts
    and connection errors → ``device_unreachable``; undecodable bodies →
    ``malformed``.
    """

    def __init__(
        self,
        vendor: str,
        base_url: str,
        credentials: "CredentialProvider",
        *,
        kinds: Iterable[DeviceKind] | None = None,
        confirm_with_status: bool = True,
        min_request_interval: float = 0.5,
        default_timeout: float = 10.0,
        session: requests.Session | None = None,
        scope: str | None = None,
    ):
        """
        Initialize HTTP adapter.

        Args:
            vendor: Vendor key
            base_url: REST base URL without trailing slash
            credentials: Provider for the vendor's bearer credential
            kinds: Device kinds served (all when omitted)
            confirm_with_status: Poll once when a command is only acknowledged
            min_request_interval: Minimum seconds between two requests
            default_timeout: Per-request deadline when the caller gives none
            session: Optional pre-built requests session
            scope: Scope context passed to the credential provider
        """
        super().__init__(vendor, kinds=kinds, default_timeout=default_timeout)
        self.base_url = base_url.rstrip("/")
        self.credentials = credentials
        self.confirm_with_status = confirm_with_status
        self.min_request_interval = min_request_interval
        self.scope = scope
        self.session = session or requests.Session()

        self._credential = None
        self._throttle_lock = threading.Lock()
        self._last_request_at = 0.0

    # ==================== Session ====================

    def initialize(self) -> None:
        self._credential = self.credentials.get_credential(self.vendor, self.scope)
        logger.debug("HTTP adapter %s initialized", self.vendor)

    def close(self) -> None:
        self.session.close()

    def _refresh_credential(self) -> None:
        logger.info("Refreshing credential for vendor %s after auth failure", self.vendor)
        self._credential = self.credentials.refresh(self.vendor, self.scope)

    def _headers(self) -> dict[str, str]:
        if self._credential is None:
            self.initialize()
        return {
            "Authorization": self._credential.authorization_header(),
            "Accept": "application/json",
        }

    def _throttle(self) -> None:
        if self.min_request_interval <= 0:
            return
        with self._throttle_lock:
            wait = self._last_request_at + self.min_request_interval - time.monotonic()
            if wait > 0:
                time.sleep(wait)
            self._last_request_at = time.monotonic()

    # ==================== Transport ====================

    def _request(self, method: str, path: str, *, timeout: float, json_body: Any = None) -> Any:
        url = f"{self.base_url}{path}"
        refreshed = False
        while True:
            self._throttle()
            try:
                response = self.session.request(
                    method, url, headers=self._headers(), json=json_body, timeout=timeout
                )
            except requests.exceptions.Timeout as exc:
                raise AdapterError.unreachable(f"{self.vendor}: request timed out after {timeout}s") from exc
            except requests.exceptions.RequestException as exc:
                raise AdapterError.unreachable(f"{self.vendor}: {exc}") from exc

            status = response.status_code
            if status in _AUTH_STATUSES:
                if refreshed:
                    raise AdapterError.auth_expired(f"{self.vendor}: credential rejected after refresh")
                self._refresh_credential()
                refreshed = True
                continue
            if status == 429:
                raise AdapterError.rate_limited(_parse_retry_after(response.headers.get("Retry-After")))
            if status in _REJECTED_STATUSES:
                raise AdapterError.rejected(self._vendor_reason(response))
            if status >= 500:
                raise AdapterError.unreachable(f"{self.vendor}: HTTP {status}")
            if status >= 400:
                raise AdapterError.rejected(self._vendor_reason(response))
            if status == 204 or not response.content:
                return None
            try:
                return response.json()
            except ValueError as exc:
                raise AdapterError.malformed(f"{self.vendor}: response is not JSON") from exc

    @staticmethod
    def _vendor_reason(response: requests.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:200] or f"HTTP {response.status_code}"
        if isinstance(body, Mapping):
            for key in ("message", "error", "reason", "detail"):
                if body.get(key):
                    return str(body[key])
        return f"HTTP {response.status_code}"

    def _snapshot(self, body: Any, *, device_id: str, kind: DeviceKind, sent_at: datetime) -> DeviceSnapshot:
        """*sent_at* stamps bodies without ``observed_at``; a read never outranks a later command."""
        if not isinstance(body, Mapping) or not isinstance(body.get("state"), Mapping):
            raise AdapterError.malformed(f"{self.vendor}: device body has no state object")
        try:
            payload = payload_from_dict(kind, body["state"])
        except (ValueError, TypeError) as exc:
            raise AdapterError.malformed(f"{self.vendor}: {exc}") from exc
        return DeviceSnapshot(
            device_id=device_id,
            kind=kind,
            payload=payload,
            is_online=bool(body.get("online", True)),
            observed_at=coerce_datetime(body.get("observed_at")) or sent_at,
        )

    # ==================== Capabilities ====================

    def fetch_devices(self, *, timeout: float | None = None) -> list[DeviceSnapshot]:
        sent_at = utc_now()
        body = self._request("GET", "/devices", timeout=self._timeout(timeout))
        if not isinstance(body, Mapping) or not isinstance(body.get("devices"), list):
            raise AdapterError.malformed(f"{self.vendor}: device list missing")

        snapshots = []
        for entry in body["devices"]:
            try:
                kind = DeviceKind(entry.get("kind"))
                vendor_id = str(entry["id"])
            except (AttributeError, KeyError, ValueError):
                logger.warning("Skipping unrecognised %s device entry: %r", self.vendor, entry)
                continue
            if not self.supports_kind(kind):
                continue
            snapshots.append(self._snapshot(entry, device_id=vendor_id, kind=kind, sent_at=sent_at))
        return snapshots

    def get_status(self, device: "Device", *, timeout: float | None = None) -> DeviceSnapshot:
        sent_at = utc_now()
        body = self._request("GET", f"/devices/{device.vendor_device_id}", timeout=self._timeout(timeout))
        return self._snapshot(body, device_id=device.id, kind=device.kind, sent_at=sent_at)

    def execute(self, device: "Device", command: "DeviceCommand", *, timeout: float | None = None) -> DeviceSnapshot:
        deadline = time.monotonic() + self._timeout(timeout)
        sent_at = utc_now()
        body = self._request(
            "POST",
            f"/devices/{device.vendor_device_id}/commands",
            timeout=self._timeout(timeout),
            json_body={"command": command.operation.value, "params": dict(command.params)},
        )
        logger.info("%s: sent %s to %s", self.vendor, command.operation.value, device.vendor_device_id)

        if isinstance(body, Mapping) and isinstance(body.get("state"), Mapping):
            return self._snapshot(body, device_id=device.id, kind=device.kind, sent_at=sent_at)

        if not self.confirm_with_status:
            raise AdapterError.malformed(f"{self.vendor}: command acknowledged without resulting state")

        # Acknowledgement only: confirm with a single status read inside the remaining deadline.
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise AdapterError.unreachable(f"{self.vendor}: no time left to confirm command")
        return self.get_status(device, timeout=remaining)
