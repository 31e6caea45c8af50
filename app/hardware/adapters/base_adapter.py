"""
Base Device Adapter Interface
=============================
Abstract interface that every vendor integration implements, plus the
closed set of errors adapters may raise.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum
from typing import TYPE_CHECKING, Iterable

from app.enums.access import DeviceKind

if TYPE_CHECKING:
    from app.domain.device_state import DeviceSnapshot
    from app.domain.hierarchy import Device
    from app.domain.operations import DeviceCommand


class AdapterErrorKind(str, Enum):
    AUTH_EXPIRED = "auth_expired"
    DEVICE_UNREACHABLE = "device_unreachable"
    RATE_LIMITED = "rate_limited"
    REJECTED = "rejected"
    MALFORMED = "malformed"


class AdapterError(Exception):
    """
    Vendor-agnostic adapter failure.

    Each adapter maps its vendor's wire errors into one of the
    ``AdapterErrorKind`` values; that mapping is the only vendor-specific
    behaviour visible to the dispatcher.
    """

    def __init__(
        self,
        kind: AdapterErrorKind,
        message: str = "",
        *,
        retry_after: float | None = None,
        vendor_reason: str | None = None,
    ) -> None:
        self.kind = AdapterErrorKind(kind)
        self.retry_after = retry_after
        self.vendor_reason = vendor_reason
        super().__init__(message or vendor_reason or self.kind.value)

    @property
    def is_transient(self) -> bool:
        return self.kind in (AdapterErrorKind.RATE_LIMITED, AdapterErrorKind.DEVICE_UNREACHABLE)

    @property
    def is_auth(self) -> bool:
        return self.kind == AdapterErrorKind.AUTH_EXPIRED

    @classmethod
    def auth_expired(cls, message: str = "Vendor credential expired") -> "AdapterError":
        return cls(AdapterErrorKind.AUTH_EXPIRED, message)

    @classmethod
    def unreachable(cls, message: str = "Device unreachable") -> "AdapterError":
        return cls(AdapterErrorKind.DEVICE_UNREACHABLE, message)

    @classmethod
    def rate_limited(cls, retry_after: float | None = None) -> "AdapterError":
        return cls(AdapterErrorKind.RATE_LIMITED, "Vendor rate limit hit", retry_after=retry_after)

    @classmethod
    def rejected(cls, vendor_reason: str) -> "AdapterError":
        return cls(AdapterErrorKind.REJECTED, vendor_reason=vendor_reason)

    @classmethod
    def malformed(cls, message: str = "Malformed vendor response") -> "AdapterError":
        return cls(AdapterErrorKind.MALFORMED, message)

    def __repr__(self) -> str:
        return f"AdapterError(kind={self.kind.value!r}, message={str(self)!r})"


class DeviceAdapter(ABC):
    """
    Uniform capability surface over one vendor's network API.

    Required Methods (must override):
        - initialize(): establish credentials / session (idempotent)
        - fetch_devices(): full discovery for reconciliation
        - get_status(): read one device
        - execute(): send one state-changing command and return the observed state

    Every network call takes a ``timeout`` in seconds; exceeding it is
    reported as ``device_unreachable``.
    """

    #: Device kinds this adapter can drive; ``None`` means every kind.
    kinds: frozenset[DeviceKind] | None = None

    def __init__(self, vendor: str, *, kinds: Iterable[DeviceKind] | None = None, default_timeout: float = 10.0):
        self.vendor = vendor
        if kinds is not None:
            self.kinds = frozenset(DeviceKind(k) for k in kinds)
        self.default_timeout = default_timeout

    @abstractmethod
    def initialize(self) -> None:
        """
        Establish credentials and session state.

        Raises:
            AdapterError: If the vendor cannot be reached or rejects the credential
        """

    @abstractmethod
    def fetch_devices(self, *, timeout: float | None = None) -> list["DeviceSnapshot"]:
        """
        Discover every device the vendor account can see.

        Returns:
            Snapshots keyed by the vendor's device identifier
        """

    @abstractmethod
    def get_status(self, device: "Device", *, timeout: float | None = None) -> "DeviceSnapshot":
        """
        Read the current state of one device.

        Raises:
            AdapterError: On any vendor failure
        """

    @abstractmethod
    def execute(self, device: "Device", command: "DeviceCommand", *, timeout: float | None = None) -> "DeviceSnapshot":
        """
        Send one command and return the state observed afterwards.

        Vendors that only acknowledge the command must confirm it with a
        status read before returning.

        Raises:
            AdapterError: On any vendor failure
        """

    def supports_kind(self, kind: DeviceKind) -> bool:
        return self.kinds is None or DeviceKind(kind) in self.kinds

    def close(self) -> None:
        """Release network resources (optional, override if needed)."""
        return None

    def _timeout(self, timeout: float | None) -> float:
        return self.default_timeout if timeout is None else timeout

    def __repr__(self) -> str:
        return f"{type(self).__name__}(vendor={self.vendor!r})"
