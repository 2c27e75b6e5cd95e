from channels.base import (
    ChannelError, CredentialMissingError, RefreshFailedError, RemoteSendFailedError,
    WorkspaceClient, CredentialRefresher,
)
from channels.client_cache import SlackClientCache
from channels.slack_client import SlackClient, SlackWebApi

__all__ = [
    "ChannelError", "CredentialMissingError", "RefreshFailedError", "RemoteSendFailedError",
    "WorkspaceClient", "CredentialRefresher",
    "SlackClientCache", "SlackClient", "SlackWebApi",
]
