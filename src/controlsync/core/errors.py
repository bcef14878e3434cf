"""
Classified errors for controlsync.

Every failure that leaves the core is one of:

- TransportError      the request never produced a response (connect, TLS,
                      timeout, caller cancellation). Retryable by the caller.
- RemoteStatusError   the API answered with a non-2xx status. Carries the
                      real (unredacted) response body.
- NotFoundError       logical 404, or a lookup that produced no record.
- DecodeError         a 2xx body did not match any accepted shape.
- IdentityChangedError an update answered with another identity (fatal).

The core never retries and never swallows these; they go to the caller.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import ClassVar


class ErrorKind(str, Enum):
    TRANSPORT = "transport"
    REMOTE_STATUS = "remote_status"
    DECODE = "decode"
    NOT_FOUND = "not_found"
    IDENTITY = "identity"


@dataclass(eq=False)
class ControlPlaneError(Exception):
    """Base error with HTTP context."""
    message: str = ""
    status: int = 0
    url: str = ""
    body: str = ""

    kind: ClassVar[ErrorKind] = ErrorKind.REMOTE_STATUS

    def __str__(self) -> str:
        base = f"{type(self).__name__}(kind={self.kind.value}, status={self.status}"
        if self.url:
            base += f", url={self.url}"
        base += ")"
        if self.message:
            base += f": {self.message}"
        if self.body:
            base += f" body={self.body[:500]}"
        return base

    @property
    def retryable(self) -> bool:
        return False


class TransportError(ControlPlaneError):
    """No response was received (network, TLS, timeout, cancellation)."""
    kind = ErrorKind.TRANSPORT

    @property
    def retryable(self) -> bool:
        return True


class RequestTimeout(TransportError):
    """The request did not complete within its deadline."""


class RequestCancelled(TransportError):
    """The caller cancelled the request; the outcome on the remote side is unknown."""


class RemoteStatusError(ControlPlaneError):
    """The remote API rejected the request with a non-2xx status."""
    kind = ErrorKind.REMOTE_STATUS


class NotFoundError(RemoteStatusError):
    """The resource does not exist remotely (404 or empty lookup).

    A 404 is still a remote status; ``status`` is 0 when the lookup itself
    succeeded but produced no record.
    """
    kind = ErrorKind.NOT_FOUND


class DecodeError(ControlPlaneError):
    """A successful response body could not be decoded into a record."""
    kind = ErrorKind.DECODE


@dataclass(eq=False)
class IdentityChangedError(ControlPlaneError):
    """An update returned a different identity than the one it was sent for."""
    expected: str = ""
    actual: str = ""

    kind = ErrorKind.IDENTITY


class ConfigError(ValueError):
    """Raised when runtime configuration cannot be resolved."""


class ValidationError(ValueError):
    """Raised when a desired configuration or manifest is malformed."""
