# service/emailer.py
from __future__ import annotations

import os
import smtplib
import ssl
from collections.abc import Iterable
from email.message import EmailMessage
from email.utils import formatdate, make_msgid

# ---- Errors -----------------------------------------------------------------


class EmailSendError(RuntimeError):
    """Raised when an email cannot be delivered."""


# ---- Env / Settings ----------------------------------------------------------


def _getenv_any(*names: str, default: str | None = None) -> str | None:
    for n in names:
        v = os.getenv(n)
        if v is not None and v != "":
            return v
    return default


def resolve_smtp_settings() -> dict:
    """
    SMTP settings from env:
      - SMTP_HOST | EMAIL_HOST           (default 127.0.0.1)
      - SMTP_PORT | EMAIL_PORT           (default 587)
      - SMTP_USERNAME | EMAIL_USER
      - SMTP_PASSWORD | EMAIL_PASS
      - SMTP_FROM                        (default: the username)
      - SMTP_USE_SSL = "true" | "false"
      - SMTP_STARTTLS = "true" | "false" | "auto" (default)
      - NOTIFY_EMAIL                     default recipient(s), comma separated
    """
    host = _getenv_any("SMTP_HOST", "EMAIL_HOST", default="127.0.0.1")
    port = int(_getenv_any("SMTP_PORT", "EMAIL_PORT", default="587") or 587)
    username = _getenv_any("SMTP_USERNAME", "EMAIL_USER")
    password = _getenv_any("SMTP_PASSWORD", "EMAIL_PASS")

    use_ssl = (_getenv_any("SMTP_USE_SSL", default="false") or "false").strip().lower() == "true"
    starttls = (_getenv_any("SMTP_STARTTLS", default="auto") or "auto").strip().lower()
    if use_ssl:
        starttls = "false"

    return {
        "host": host,
        "port": port,
        "username": username,
        "password": password,
        "use_ssl": use_ssl,
        "starttls": starttls,  # "true" | "false" | "auto"
        "from_addr": _getenv_any("SMTP_FROM", default=username or "") or "",
        "default_to": [a.strip() for a in (_getenv_any("NOTIFY_EMAIL", default="") or "").split(",") if a.strip()],
    }


# ---- Helpers ----------------------------------------------------------------


def _as_list(values: Iterable[str] | str | None) -> list[str]:
    if not values:
        return []
    if isinstance(values, str):
        values = [values]
    return [v for v in (s.strip() for s in values) if v]


def _should_starttls(port: int, starttls_setting: str) -> bool:
    if starttls_setting == "true":
        return True
    if starttls_setting == "false":
        return False
    # "auto": enable except on the usual cleartext relay ports
    return port not in (25, 1025, 2525)


def build_message(*, subject: str, html: str, to: list[str], from_addr: str) -> EmailMessage:
    if not subject or not subject.strip():
        raise EmailSendError("Missing subject.")
    if not html or not html.strip():
        raise EmailSendError("Missing HTML body.")
    if not to:
        raise EmailSendError("No recipients.")
    if not from_addr:
        raise EmailSendError("No from address resolved. Set SMTP_FROM or SMTP_USERNAME.")

    msg = EmailMessage()
    msg["From"] = from_addr
    msg["To"] = ", ".join(to)
    msg["Subject"] = subject
    msg["Date"] = formatdate(localtime=True)
    msg["Message-ID"] = make_msgid()

    # HTML with plain-text fallback
    msg.set_content("This message requires an HTML-capable client.")
    msg.add_alternative(html, subtype="html", charset="utf-8")
    return msg


def _send_via_smtp(msg: EmailMessage, *, rcpt_to: list[str], settings: dict) -> None:
    host = settings["host"]
    port = settings["port"]
    use_ssl = settings["use_ssl"]
    if not host:
        raise EmailSendError("Missing SMTP host (SMTP_HOST or EMAIL_HOST).")

    context = ssl.create_default_context()
    try:
        server = smtplib.SMTP_SSL(host, port, context=context) if use_ssl else smtplib.SMTP(host, port)
        with server:
            server.ehlo()
            if not use_ssl and _should_starttls(port, settings["starttls"]):
                server.starttls(context=context)
                server.ehlo()
            if settings["username"] and settings["password"]:
                server.login(settings["username"], settings["password"])
            server.send_message(msg, to_addrs=rcpt_to)
    except (smtplib.SMTPException, OSError) as e:
        raise EmailSendError(f"SMTP send failed: {e}") from e


# ---- Public API --------------------------------------------------------------


def send_html(*, subject: str, html: str, to: list[str] | str | None = None) -> str:
    """
    Send an HTML email. Recipients default to NOTIFY_EMAIL.

    Returns:
        message_id (str): RFC-822 Message-ID generated by the sender.

    Raises:
        EmailSendError on any failure (connection/auth/SMTP/validation).
    """
    settings = resolve_smtp_settings()
    to_l = _as_list(to) or settings["default_to"]
    msg = build_message(subject=subject, html=html, to=to_l, from_addr=settings["from_addr"].strip())
    _send_via_smtp(msg, rcpt_to=to_l, settings=settings)
    return str(msg["Message-ID"])
