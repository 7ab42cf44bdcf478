"""
auth/notifier.py -- Hand-off boundary to the outbound email collaborator.

Delivery itself is out of scope for this package. CredentialService calls a
Notifier with (account, opaque token) and moves on: the hand-off is
fire-and-forget, and the service logs and swallows any exception a notifier
raises, so a broken mail pipeline never fails registration or reset.

LoggingNotifier is the default wiring. It records that a message would be
sent without ever writing the token itself to the log.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from typing import Protocol

from auth.models import Account

logger = logging.getLogger("authcore.notifier")


class Notifier(Protocol):
    def send_verification_email(self, account: Account, token: str) -> None: ...

    def send_password_reset_email(self, account: Account, token: str) -> None: ...


class LoggingNotifier:
    """Notifier that only logs the hand-off. Stand-in until a mail service is wired."""

    def send_verification_email(self, account: Account, token: str) -> None:
        logger.info("Verification email queued for account %s", account.id)

    def send_password_reset_email(self, account: Account, token: str) -> None:
        logger.info("Password reset email queued for account %s", account.id)
