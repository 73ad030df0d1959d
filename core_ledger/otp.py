"""
One-Time Code Challenge Store

Short-lived, per-account step-up codes for high-value transfers. The store
is injected into the engine; InMemoryChallengeStore keeps challenges in
process memory, which only holds when a single engine instance serves all
requests for an account.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional
import hmac
import secrets
import threading

from .errors import InvalidOrExpired
from .logging_config import get_logger


logger = get_logger("ledger.otp")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class OtpChallenge:
    """An issued code and the instant it stops being valid"""
    account_id: str
    code: str
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


class ChallengeStore(ABC):
    """Issuance and single-use verification of step-up codes"""

    @abstractmethod
    def issue(self, account_id: str) -> OtpChallenge:
        """Create a challenge, replacing any live one for the account"""
        pass

    @abstractmethod
    def verify_and_consume(self, account_id: str, code: str) -> None:
        """
        Consume the account's challenge if the code matches and is unexpired

        Raises:
            InvalidOrExpired: On any mismatch; the stored challenge is left intact
        """
        pass


class InMemoryChallengeStore(ChallengeStore):
    """Process-local challenge store with TTL semantics"""

    def __init__(self, ttl_seconds: int = 300, digits: int = 6,
                 clock: Optional[Callable[[], datetime]] = None):
        if digits < 4:
            raise ValueError("One-time codes need at least 4 digits")
        self.ttl = timedelta(seconds=ttl_seconds)
        self.digits = digits
        self.clock = clock or utc_now
        self._challenges: Dict[str, OtpChallenge] = {}
        self._lock = threading.Lock()

    def _generate_code(self) -> str:
        # Leading digit is never zero so codes always have the full length
        low = 10 ** (self.digits - 1)
        return str(low + secrets.randbelow(9 * low))

    def issue(self, account_id: str) -> OtpChallenge:
        challenge = OtpChallenge(
            account_id=account_id,
            code=self._generate_code(),
            expires_at=self.clock() + self.ttl,
        )
        with self._lock:
            replaced = account_id in self._challenges
            self._challenges[account_id] = challenge
        logger.info(f"Issued step-up challenge for account {account_id}"
                    + (" (replacing previous)" if replaced else ""))
        return challenge

    def verify_and_consume(self, account_id: str, code: str) -> None:
        supplied = (code or "").strip()
        with self._lock:
            challenge = self._challenges.get(account_id)
            if challenge is None:
                raise InvalidOrExpired("Invalid or expired OTP", {"account_id": account_id})
            if challenge.is_expired(self.clock()):
                raise InvalidOrExpired("Invalid or expired OTP", {"account_id": account_id})
            if not hmac.compare_digest(challenge.code.encode(), supplied.encode()):
                raise InvalidOrExpired("Invalid or expired OTP", {"account_id": account_id})
            del self._challenges[account_id]
        logger.info(f"Step-up challenge consumed for account {account_id}")

    def purge_expired(self) -> int:
        """Drop expired challenges; returns how many were removed"""
        now = self.clock()
        with self._lock:
            expired = [k for k, c in self._challenges.items() if c.is_expired(now)]
            for account_id in expired:
                del self._challenges[account_id]
        return len(expired)

    def pending(self, account_id: str) -> Optional[OtpChallenge]:
        with self._lock:
            return self._challenges.get(account_id)
