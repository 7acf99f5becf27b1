"""Opaque bearer credential collaborator for SKY API calls."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from pledge_queue.config import SkyApiSettings


class CredentialUnavailableError(RuntimeError):
    """No usable bearer token or subscription key."""


@dataclass(frozen=True, slots=True)
class SkyCredential:
    access_token: str
    subscription_key: str

    def to_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Bb-Api-Subscription-Key": self.subscription_key,
        }


class CredentialProvider(Protocol):
    """Returns a fresh credential per call; refresh is the provider's concern."""

    def get_credential(self) -> SkyCredential: ...


class StaticCredentialProvider:
    """Credential taken from configuration as-is."""

    def __init__(self, *, access_token: str, subscription_key: str) -> None:
        self._access_token = access_token.strip()
        self._subscription_key = subscription_key.strip()

    @classmethod
    def from_settings(cls, settings: SkyApiSettings) -> StaticCredentialProvider:
        return cls(
            access_token=settings.access_token,
            subscription_key=settings.subscription_key,
        )

    def get_credential(self) -> SkyCredential:
        if not self._access_token:
            raise CredentialUnavailableError("SKY access token is not configured.")
        if not self._subscription_key:
            raise CredentialUnavailableError("SKY subscription key is not configured.")
        return SkyCredential(
            access_token=self._access_token,
            subscription_key=self._subscription_key,
        )
