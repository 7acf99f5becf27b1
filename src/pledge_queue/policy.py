"""Posting policy: global kill-switch consulted by the host and the processor."""

from __future__ import annotations

from typing import Protocol

from pledge_queue.config import PostingSettings

DEMO_MODE_REASON = "Demo mode is enabled; submissions to SKY are disabled."
POSTING_DISABLED_REASON = "Posting to SKY is disabled by configuration."


class PolicyProvider(Protocol):
    """Decides whether submissions to the external API are currently allowed."""

    def is_submission_allowed(self) -> tuple[bool, str | None]: ...


class SettingsPolicyProvider:
    """Policy backed by ``PostingSettings``; demo mode wins over the posting flag."""

    def __init__(self, settings: PostingSettings) -> None:
        self._settings = settings

    def is_submission_allowed(self) -> tuple[bool, str | None]:
        if self._settings.demo_mode:
            return False, DEMO_MODE_REASON
        if not self._settings.posting_enabled:
            return False, POSTING_DISABLED_REASON
        return True, None


class StaticPolicyProvider:
    """Fixed answer, for tests and one-off tooling."""

    def __init__(self, *, allowed: bool = True, reason: str | None = None) -> None:
        self.allowed = allowed
        self.reason = reason

    def is_submission_allowed(self) -> tuple[bool, str | None]:
        return self.allowed, None if self.allowed else self.reason
