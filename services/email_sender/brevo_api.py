from __future__ import annotations

import base64
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

import requests

from services.email_sender.retry import send_with_retries
from services.email_sender.templates import mask_email
from services.errors import NotifierError

DEFAULT_API_URL = "https://api.brevo.com/v3/smtp/email"


class BrevoMailer:
    """Transactional email through the Brevo HTTP API."""

    def __init__(
        self,
        *,
        api_key: str,
        sender_email: str,
        sender_name: str = "",
        api_url: str = DEFAULT_API_URL,
        timeout_sec: int = 30,
        max_attempts: int = 3,
        retry_delay_sec: float = 1.0,
        session: Optional[requests.Session] = None,
    ):
        if not api_key:
            raise NotifierError("BREVO_API_KEY is not set")
        if not sender_email:
            raise NotifierError("SENDER_EMAIL is not set")
        self.sender_email = sender_email
        self.sender_name = sender_name
        self.api_url = api_url
        self.timeout_sec = timeout_sec
        self.max_attempts = max_attempts
        self.retry_delay_sec = retry_delay_sec
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "accept": "application/json",
                "api-key": api_key,
                "Content-Type": "application/json",
            }
        )

    def _payload(self, to: str, subject: str, html: str, to_name: str, attachments: Sequence[Path]) -> Dict[str, Any]:
        sender: Dict[str, str] = {"email": self.sender_email}
        if self.sender_name:
            sender["name"] = self.sender_name
        recipient: Dict[str, str] = {"email": to}
        if to_name:
            recipient["name"] = to_name
        payload: Dict[str, Any] = {
            "sender": sender,
            "to": [recipient],
            "subject": subject,
            "htmlContent": html,
        }
        if attachments:
            files = []
            for p in attachments:
                if not p.exists():
                    raise NotifierError(f"Attachment not found: {p}")
                files.append({"name": p.name, "content": base64.b64encode(p.read_bytes()).decode("ascii")})
            payload["attachment"] = files
        return payload

    def _post(self, payload: Dict[str, Any]) -> None:
        r = self.session.post(self.api_url, json=payload, timeout=self.timeout_sec)
        if r.status_code < 200 or r.status_code >= 300:
            raise NotifierError(f"Brevo API HTTP {r.status_code}: {r.text[:300]}")

    def send(
        self,
        to: str,
        subject: str,
        html: str,
        *,
        to_name: str = "",
        attachments: Optional[Sequence[Path]] = None,
    ) -> None:
        to = (to or "").strip()
        if not to:
            raise NotifierError("recipient is empty")
        payload = self._payload(to, subject, html, to_name, list(attachments or []))
        send_with_retries(
            lambda: self._post(payload),
            attempts=self.max_attempts,
            delay_sec=self.retry_delay_sec,
            label=mask_email(to),
        )
