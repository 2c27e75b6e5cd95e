"""
Remote boundary — the contracts the client cache and delivery engine consume.

Provides:
- ChannelError: structured error hierarchy carrying the remote error code
- WorkspaceClient: an authenticated handle that can post to a channel
- CredentialRefresher: exchanges a refresh token for a new access token
"""
from __future__ import annotations

import abc
from typing import Any, Callable

from models.schemas import RefreshResult, SendResult


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Base exception for all remote workspace operations."""

    def __init__(self, message: str, code: str = "", retryable: bool = False):
        self.code = code or message
        self.retryable = retryable
        super().__init__(message)


class CredentialMissingError(ChannelError):
    """No usable credential: none stored, or expired with no way to refresh."""

    def __init__(self, workspace_id: str = "", user_id: str = ""):
        self.workspace_id = workspace_id
        self.user_id = user_id
        super().__init__("Slack client not available", code="client_unavailable")


class RefreshFailedError(ChannelError):
    """The refresh-token exchange was refused or could not be performed."""

    def __init__(self, message: str, code: str = "refresh_failed"):
        super().__init__(message, code=code)


class RemoteSendFailedError(ChannelError):
    """
    The remote API rejected a call or could not be reached.

    `str(err)` is the remote error string unchanged (channel_not_found,
    not_in_channel, rate_limited, ...) so callers can map it directly.
    """

    def __init__(self, code: str, retryable: bool = False, status_code: int = 0):
        self.status_code = status_code
        super().__init__(code, code=code, retryable=retryable)


# ══════════════════════════════════════════════════════════════
#  CONTRACTS
# ══════════════════════════════════════════════════════════════

class WorkspaceClient(abc.ABC):
    """A client bound to one access token."""

    @abc.abstractmethod
    async def send_message(self, channel: str, text: str) -> SendResult:
        ...

    @abc.abstractmethod
    async def list_channels(self) -> list[dict[str, Any]]:
        """Channels visible to the token: [{"id", "name", "is_private"}]."""
        ...


class CredentialRefresher(abc.ABC):

    @abc.abstractmethod
    async def refresh_credential(self, refresh_token: str) -> RefreshResult:
        """Raise RefreshFailedError when the exchange is refused."""
        ...


ClientFactory = Callable[[str], WorkspaceClient]
