# FILE: trustgate/notify.py
from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Message:
    kind: str
    to: str
    subject: str
    body: str
    data: Dict[str, Any] = field(default_factory=dict)


class Mailer(ABC):
    """
    Outbound e-mail collaborator.

    Only `send` is abstract; the helpers build the messages the auth flows
    need. Link tokens and codes are placed in `data` so tests can read them
    back without parsing bodies.
    """

    def __init__(self, *, frontend_url: str = "http://localhost:3000", product: str = "CashHeros"):
        self.frontend_url = frontend_url.rstrip("/")
        self.product = product

    @abstractmethod
    async def send(self, message: Message) -> None:
        ...

    async def send_verification(self, to: str, token: str, *, first_name: str = "") -> None:
        link = f"{self.frontend_url}/verify-email/{token}"
        await self.send(
            Message(
                kind="verification",
                to=to,
                subject=f"Verify your {self.product} account",
                body=f"Hi {first_name or 'there'},\n\nConfirm your e-mail address: {link}\n",
                data={"token": token, "link": link},
            )
        )

    async def send_password_reset(self, to: str, token: str) -> None:
        link = f"{self.frontend_url}/reset-password/{token}"
        await self.send(
            Message(
                kind="password_reset",
                to=to,
                subject="Reset your password",
                body=f"Use this link within one hour to choose a new password: {link}\n",
                data={"token": token, "link": link},
            )
        )

    async def send_email_change(self, to: str, token: str) -> None:
        link = f"{self.frontend_url}/verify-email-change/{token}"
        await self.send(
            Message(
                kind="email_change",
                to=to,
                subject="Confirm your new e-mail address",
                body=f"Confirm this address for your {self.product} account: {link}\n",
                data={"token": token, "link": link},
            )
        )

    async def send_two_factor_code(self, to: str, code: str) -> None:
        await self.send(
            Message(
                kind="two_factor_code",
                to=to,
                subject="Your sign-in code",
                body=f"Your verification code is {code}. It expires in 10 minutes.\n",
                data={"code": code},
            )
        )

    async def send_account_activity(self, to: str, activity: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        await self.send(
            Message(
                kind="account_activity",
                to=to,
                subject="Security activity on your account",
                body=f"We noticed: {activity}. If this was not you, reset your password.\n",
                data={"activity": activity, **(details or {})},
            )
        )


class LogMailer(Mailer):
    """Writes a log line instead of sending; secrets stay out of the line."""

    async def send(self, message: Message) -> None:
        _logger.info("mail.send", extra={"kind": message.kind, "subject": message.subject})


class CapturingMailer(Mailer):
    """Keeps every message in memory."""

    def __init__(self, **kw: Any):
        super().__init__(**kw)
        self._g = threading.Lock()
        self.outbox: List[Message] = []

    async def send(self, message: Message) -> None:
        with self._g:
            self.outbox.append(message)

    def last(self, kind: Optional[str] = None, to: Optional[str] = None) -> Optional[Message]:
        with self._g:
            for m in reversed(self.outbox):
                if (kind is None or m.kind == kind) and (to is None or m.to == to):
                    return m
        return None


__all__ = ["Message", "Mailer", "LogMailer", "CapturingMailer"]
