"""Error taxonomy for the MikroTik NOC core."""
from __future__ import annotations

from typing import Optional


class RouterClientError(Exception):
    """Base class for failures talking to a RouterOS device."""

    kind = 'router'

    def __init__(self, message: str, host: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.host = host

    def __str__(self) -> str:
        if self.host:
            return f"{self.host}: {self.message}"
        return self.message


class RouterConnectionError(RouterClientError):
    """Device unreachable: timeout, refused connection or dropped socket."""

    kind = 'connection'


class RouterAuthError(RouterClientError):
    """The device rejected the configured credentials."""

    kind = 'auth'


class RouterProtocolError(RouterClientError):
    """The device answered with a malformed or unexpected reply."""

    kind = 'protocol'


class ConstraintViolation(Exception):
    """A second open alert/incident was rejected by the open-row unique index."""


class NocServiceError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(NocServiceError):
    status_code = 404


class ValidationError(NocServiceError):
    status_code = 400


class ConflictError(NocServiceError):
    status_code = 409
