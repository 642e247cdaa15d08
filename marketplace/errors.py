from __future__ import annotations

from typing import Any, Optional


class MarketplaceError(Exception):
    """Base error for every failure the API reports to clients."""

    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFoundError(MarketplaceError):
    status_code = 404


class ValidationError(MarketplaceError):
    status_code = 400


class AuthorizationError(MarketplaceError):
    """Missing user (401) or a user without the required role (403)."""

    def __init__(self, message: str, status_code: int = 403) -> None:
        super().__init__(message)
        self.status_code = status_code


class StorageError(MarketplaceError):
    status_code = 500


class GatewayError(MarketplaceError):
    """The payment gateway rejected a call or could not be reached."""

    status_code = 502

    def __init__(
        self,
        message: str,
        gateway_status: Optional[int] = None,
        body: Any = None,
    ) -> None:
        super().__init__(message)
        self.gateway_status = gateway_status
        self.body = body
