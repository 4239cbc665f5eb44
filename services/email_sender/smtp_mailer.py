from __future__ import annotations

import mimetypes
import smtplib
from email.mime.application import MIMEApplication
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr
from pathlib import Path
from typing import Callable, Optional, Sequence

from services.email_sender.retry import send_with_retries
from services.email_sender.templates import html_to_text, mask_email
from services.errors import NotifierError


class SmtpMailer:
    """Send UTF-8 HTML email with optional attachments via SMTP.

    Port 465 (or ``use_ssl``) uses implicit TLS; any other port tries STARTTLS
    and carries on in plain text when the server does not offer it.
    """

    def __init__(
        self,
        *,
        host: str,
        port: int = 587,
        user: str = "",
        password: str = "",
        sender: str = "",
        sender_name: str = "",
        use_ssl: bool = False,
        timeout_sec: int = 30,
        max_attempts: int = 3,
        retry_delay_sec: float = 1.0,
        smtp_factory: Optional[Callable[..., smtplib.SMTP]] = None,
    ):
        if not host:
            raise NotifierError("SMTP_HOST is not set")
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.sender = sender or user
        self.sender_name = sender_name
        self.use_ssl = use_ssl or port == 465
        self.timeout_sec = timeout_sec
        self.max_attempts = max_attempts
        self.retry_delay_sec = retry_delay_sec
        self._smtp_factory = smtp_factory
        if not self.sender:
            raise NotifierError("SMTP_FROM/SMTP_USER is not set")

    def _build_message(
        self, to: str, subject: str, html: str, to_name: str, attachments: Sequence[Path]
    ) -> MIMEMultipart:
        msg = MIMEMultipart("mixed")
        msg["From"] = formataddr((self.sender_name, self.sender)) if self.sender_name else self.sender
        msg["To"] = formataddr((to_name, to)) if to_name else to
        msg["Subject"] = subject

        body = MIMEMultipart("alternative")
        body.attach(MIMEText(html_to_text(html), _subtype="plain", _charset="utf-8"))
        body.attach(MIMEText(html or "", _subtype="html", _charset="utf-8"))
        msg.attach(body)

        for p in attachments:
            if not p.exists():
                raise NotifierError(f"Attachment not found: {p}")
            ctype = mimetypes.guess_type(p.name)[0] or "application/octet-stream"
            part = MIMEApplication(p.read_bytes(), _subtype=ctype.split("/", 1)[1])
            part.add_header("Content-Disposition", "attachment", filename=p.name)
            msg.attach(part)
        return msg

    def _connect(self) -> smtplib.SMTP:
        if self._smtp_factory is not None:
            return self._smtp_factory(self.host, self.port, timeout=self.timeout_sec)
        if self.use_ssl:
            return smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout_sec)
        return smtplib.SMTP(self.host, self.port, timeout=self.timeout_sec)

    def _deliver(self, to: str, msg: MIMEMultipart) -> None:
        with self._connect() as server:
            server.ehlo()
            if not self.use_ssl:
                try:
                    server.starttls()
                    server.ehlo()
                except smtplib.SMTPNotSupportedError:
                    # Some servers may not offer STARTTLS on the configured port.
                    pass
            if self.user:
                server.login(self.user, self.password)
            server.sendmail(self.sender, [to], msg.as_string())

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
        msg = self._build_message(to, subject, html, to_name, list(attachments or []))
        send_with_retries(
            lambda: self._deliver(to, msg),
            attempts=self.max_attempts,
            delay_sec=self.retry_delay_sec,
            label=mask_email(to),
        )
