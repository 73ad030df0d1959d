"""
Step-Up Code Notifiers

Delivers one-time codes out of band. Codes never appear in API responses or
logs; the outbox notifier keeps them in memory for development and tests,
the webhook notifier hands them to an external delivery service.
"""

from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Dict, List, Optional
import threading

import requests

from .currency import format_amount
from .errors import ChallengeDeliveryFailed
from .otp import OtpChallenge
from .logging_config import get_logger


logger = get_logger("ledger.notifications")


def mask_code(code: str) -> str:
    """Show only the last digit, e.g. *****7"""
    if not code:
        return ""
    return "*" * (len(code) - 1) + code[-1]


class OtpNotifier(ABC):
    """Abstract base class for one-time code delivery channels"""

    @abstractmethod
    def send(self, challenge: OtpChallenge, amount: Decimal) -> None:
        """
        Deliver the challenge code to the account holder

        Raises:
            ChallengeDeliveryFailed: If the channel could not accept the code
        """
        pass


class OutboxOtpNotifier(OtpNotifier):
    """Development channel that keeps delivered codes in memory"""

    def __init__(self):
        self._outbox: Dict[str, List[OtpChallenge]] = {}
        self._lock = threading.Lock()

    def send(self, challenge: OtpChallenge, amount: Decimal) -> None:
        with self._lock:
            self._outbox.setdefault(challenge.account_id, []).append(challenge)
        logger.info(
            f"OTP {mask_code(challenge.code)} queued for account {challenge.account_id} "
            f"(transfer of {format_amount(amount)})"
        )

    def last_code(self, account_id: str) -> Optional[str]:
        """Most recently delivered code for an account"""
        with self._lock:
            delivered = self._outbox.get(account_id)
            return delivered[-1].code if delivered else None

    def delivered(self, account_id: str) -> List[OtpChallenge]:
        with self._lock:
            return list(self._outbox.get(account_id, []))


class WebhookOtpNotifier(OtpNotifier):
    """Posts codes to an external delivery service (SMS/email gateway)"""

    def __init__(self, url: str, timeout: float = 5.0, token: Optional[str] = None):
        self.url = url
        self.timeout = timeout
        self.token = token

    def send(self, challenge: OtpChallenge, amount: Decimal) -> None:
        payload = {
            "type": "otp_verification",
            "account_id": challenge.account_id,
            "code": challenge.code,
            "expires_at": challenge.expires_at.isoformat(),
            "amount": str(amount),
        }
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        try:
            response = requests.post(self.url, json=payload, timeout=self.timeout, headers=headers)
            response.raise_for_status()
        except requests.RequestException as e:
            logger.error(f"OTP delivery for account {challenge.account_id} failed: {e}")
            raise ChallengeDeliveryFailed(
                "Could not deliver the verification code, please try again",
                {"account_id": challenge.account_id}
            ) from e

        logger.info(f"OTP {mask_code(challenge.code)} delivered for account {challenge.account_id}")


def create_notifier(config) -> OtpNotifier:
    """Webhook notifier when a URL is configured, otherwise the outbox"""
    if config.otp_webhook_url:
        return WebhookOtpNotifier(config.otp_webhook_url, timeout=config.otp_webhook_timeout,
                                  token=config.otp_webhook_token)
    logger.warning("No OTP webhook configured; codes stay in the development outbox")
    return OutboxOtpNotifier()
