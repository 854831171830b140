"""Per-account lockout after repeated failed logins.

State lives in the shared key-value store so that every API process sees the
same counters:

    lockout:{email}:count   consecutive failures (INCR, expires after 24h)
    lockout:{email}:locked  lock deadline, ISO-8601 UTC (outlives the lock so the
                            counter is cleared when the deadline is read)
"""

import logging
import math
import os
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from osnovci.core.kv_store import KeyValueStore

logger = logging.getLogger(__name__)

MAX_FAILED_ATTEMPTS = int(os.getenv("LOCKOUT_MAX_ATTEMPTS", "5"))
LOCKOUT_MINUTES = int(os.getenv("LOCKOUT_MINUTES", "30"))
COUNTER_TTL_HOURS = int(os.getenv("LOCKOUT_COUNTER_TTL_HOURS", "24"))

KEY_PREFIX = "lockout:"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def _count_key(email: str) -> str:
    return f"{KEY_PREFIX}{email}:count"


def _locked_key(email: str) -> str:
    return f"{KEY_PREFIX}{email}:locked"


@dataclass
class LockoutStatus:
    locked: bool
    locked_until: datetime | None = None
    attempts_remaining: int | None = None
    message: str | None = None

    def retry_after_seconds(self, now: datetime) -> int | None:
        if not self.locked or self.locked_until is None:
            return None
        return max(1, int((self.locked_until - now).total_seconds()))

    def to_dict(self) -> dict:
        payload: dict = {"locked": self.locked}
        if self.locked_until is not None:
            payload["locked_until"] = self.locked_until.isoformat()
        if self.attempts_remaining is not None:
            payload["attempts_remaining"] = self.attempts_remaining
        if self.message:
            payload["message"] = self.message
        return payload


class AccountLockout:
    def __init__(
        self,
        store: KeyValueStore,
        *,
        max_attempts: int = MAX_FAILED_ATTEMPTS,
        lockout_minutes: int = LOCKOUT_MINUTES,
        counter_ttl_hours: int = COUNTER_TTL_HOURS,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._store = store
        self.max_attempts = max(1, max_attempts)
        self.lockout_minutes = max(1, lockout_minutes)
        self._counter_ttl_seconds = max(1, counter_ttl_hours) * 3600
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    def _read_deadline(self, email: str) -> datetime | None:
        raw = self._store.get(_locked_key(email))
        if raw is None:
            return None
        try:
            return datetime.fromisoformat(raw)
        except ValueError:
            logger.warning("Discarding unreadable lockout deadline email=%s value=%r", email, raw)
            self._clear(email)
            return None

    def _clear(self, email: str) -> None:
        self._store.delete(_count_key(email), _locked_key(email))

    def _live_deadline(self, email: str) -> datetime | None:
        """Return the active lock deadline, clearing lapsed or orphaned state."""
        locked_until = self._read_deadline(email)
        if locked_until is None:
            if self.get_failed_attempts(email) >= self.max_attempts:
                self._clear(email)
                logger.info("Discarded lockout counter without a lock email=%s", email)
            return None
        if locked_until <= self.now():
            self._clear(email)
            logger.info("Account lockout expired email=%s", email)
            return None
        return locked_until

    def record_login_attempt(self, email: str, success: bool) -> LockoutStatus:
        key = normalize_email(email)
        if success:
            self._clear(key)
            logger.info("Login succeeded, failed attempts cleared email=%s", key)
            return LockoutStatus(locked=False)

        self._live_deadline(key)
        count = self._store.incr(_count_key(key))
        if count == 1:
            self._store.expire(_count_key(key), self._counter_ttl_seconds)
        logger.warning("Failed login attempt email=%s attempt=%s", key, count)

        if count >= self.max_attempts:
            locked_until = self.now() + timedelta(minutes=self.lockout_minutes)
            self._store.set(
                _locked_key(key),
                locked_until.isoformat(),
                ttl_seconds=self.lockout_minutes * 60 + self._counter_ttl_seconds,
            )
            logger.warning(
                "Account locked email=%s attempts=%s locked_until=%s",
                key,
                count,
                locked_until.isoformat(),
            )
            return LockoutStatus(
                locked=True,
                locked_until=locked_until,
                message=(
                    "Account locked after too many failed login attempts. "
                    f"Try again in {self.lockout_minutes} minutes."
                ),
            )

        return LockoutStatus(locked=False, attempts_remaining=self.max_attempts - count)

    def is_account_locked(self, email: str) -> LockoutStatus:
        key = normalize_email(email)
        locked_until = self._live_deadline(key)
        if locked_until is None:
            return LockoutStatus(locked=False)

        now = self.now()
        minutes_remaining = max(1, math.ceil((locked_until - now).total_seconds() / 60))
        return LockoutStatus(
            locked=True,
            locked_until=locked_until,
            message=f"Account is locked. Try again in {minutes_remaining} minutes.",
        )

    def unlock_account(self, email: str) -> None:
        key = normalize_email(email)
        self._clear(key)
        logger.info("Account manually unlocked email=%s", key)

    def get_failed_attempts(self, email: str) -> int:
        raw = self._store.get(_count_key(normalize_email(email)))
        try:
            return int(raw) if raw is not None else 0
        except ValueError:
            return 0

    def cleanup_expired_lockouts(self) -> int:
        cleaned = 0
        emails = set()
        for key in self._store.scan(KEY_PREFIX):
            for suffix in (":locked", ":count"):
                if key.endswith(suffix):
                    emails.add(key[len(KEY_PREFIX):-len(suffix)])
        for email in sorted(emails):
            had_state = self._store.get(_locked_key(email)) is not None or (
                self.get_failed_attempts(email) >= self.max_attempts
            )
            if had_state and self._live_deadline(email) is None:
                cleaned += 1
        if cleaned:
            logger.info("Cleaned up expired lockouts count=%s", cleaned)
        return cleaned
