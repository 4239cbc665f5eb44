from __future__ import annotations

import html as _html
import re
from typing import Any, Dict, Tuple

_TAG_RE = re.compile(r"(?is)<[^>]+>")
_BR_RE = re.compile(r"(?i)<br\s*/?>|</p>|</h\d>|</li>|</tr>")


def mask_email(email: str) -> str:
    s = (email or "").strip()
    if "@" not in s:
        return "***" if s else ""
    local, domain = s.split("@", 1)
    return f"{local[:1]}***@{domain}"


def html_to_text(body: str) -> str:
    s = _BR_RE.sub("\n", body or "")
    s = _TAG_RE.sub("", s)
    s = _html.unescape(s)
    lines = [ln.strip() for ln in s.splitlines()]
    return "\n".join(ln for ln in lines if ln)


def download_link(file_id: str) -> str:
    return f"https://drive.google.com/file/d/{file_id}/view?usp=sharing"


def delivery_email(
    buyer_name: str, link: str, password: str, *, ttl_hours: int = 24, contact_email: str = ""
) -> Tuple[str, str]:
    name = _html.escape(buyer_name.strip()) if buyer_name and buyer_name.strip() else "there"
    subject = "Your Artwork is Ready!"
    parts = [
        f"<p><strong>Hi {name}, your artwork is ready!</strong></p>",
        f'<p><strong>Download link:</strong> <a href="{_html.escape(link)}" target="_blank">Click here</a></p>',
        f"<p><strong>Password:</strong> {_html.escape(password)}</p>",
        f"<p><strong>Please download your files within {ttl_hours} hours</strong>; the link expires after that.</p>",
    ]
    if contact_email:
        c = _html.escape(contact_email)
        parts.append(
            "<p><em>This email was generated automatically. If you have any questions, contact us at "
            f'<a href="mailto:{c}">{c}</a>.</em></p>'
        )
    else:
        parts.append("<p><em>This email was generated automatically.</em></p>")
    return subject, "\n".join(parts)


def failure_alert(order_id: str, message: str, *, requires_human: bool) -> Tuple[str, str]:
    subject = f"Order Processing Failed: Order {order_id}"
    action = (
        "Manual action is required before this order can be delivered."
        if requires_human
        else "The order will be retried automatically on the next scheduled run."
    )
    body = (
        "<h3>Order Processing Failed</h3>"
        f"<p><strong>Order:</strong> {_html.escape(order_id)}</p>"
        f"<p><strong>Details:</strong><br>{_html.escape(message).replace(chr(10), '<br>')}</p>"
        f"<p>{action}</p>"
    )
    return subject, body


def plain_alert(subject: str, message: str) -> Tuple[str, str]:
    return subject, f"<pre>{_html.escape(message)}</pre>"


def daily_summary(entries: Dict[str, Dict[str, Any]]) -> Tuple[str, str]:
    subject = f"Daily Order Failure Summary: {len(entries)} open"
    rows = []
    for key, entry in entries.items():
        rows.append(
            "<tr>"
            f"<td>{_html.escape(key)}</td>"
            f"<td>{_html.escape(str(entry.get('file') or ''))}</td>"
            f"<td>{_html.escape(str(entry.get('count') or 1))}</td>"
            f"<td>{_html.escape(str(entry.get('last_failed_at') or ''))}</td>"
            f"<td>{_html.escape(str(entry.get('reason') or ''))}</td>"
            "</tr>"
        )
    body = (
        "<h3>Orders still failing</h3>"
        "<table border=\"1\" cellpadding=\"4\" cellspacing=\"0\">"
        "<tr><th>Order / file</th><th>Export file</th><th>Attempts</th><th>Last failure</th><th>Reason</th></tr>"
        + "".join(rows)
        + "</table>"
    )
    return subject, body
