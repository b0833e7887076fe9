"""Abstract interfaces for the pool's external collaborators."""

from abc import ABC, abstractmethod

from kiro_rotation.rotation.accounts import (
    AuthDetails,
    RefreshedAuth,
    RefreshParts,
    UsageSnapshot,
)


class RefreshTokenCodec(ABC):
    """Packs refresh-token fragments into the single opaque upstream string."""

    @abstractmethod
    def encode(self, parts: RefreshParts) -> str:
        """Encode fragments into an opaque refresh-token bundle."""

    @abstractmethod
    def decode(self, bundle: str) -> RefreshParts:
        """Decode an opaque refresh-token bundle into its fragments."""


class RefreshProvider(ABC):
    """Performs the OAuth token refresh for an account."""

    @abstractmethod
    async def refresh(self, details: AuthDetails) -> RefreshedAuth:
        """Refresh credentials.

        Args:
            details: Current credentials of the account

        Returns:
            New access token, refresh-token bundle and expiry

        Raises:
            AuthenticationError: If the refresh token was rejected
        """


class UsageFetcher(ABC):
    """Fetches the quota snapshot of an account from the remote API."""

    @abstractmethod
    async def fetch(self, details: AuthDetails) -> UsageSnapshot:
        """Fetch current quota usage.

        Args:
            details: Credentials used to authenticate the request

        Returns:
            Parsed usage snapshot
        """
