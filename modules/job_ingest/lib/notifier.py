from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence

from service import emailer

from . import logging_bridge, render
from .errors import NotifyError
from .models import NotificationItem


class Notifier(ABC):
    """Delivers the aggregate list of newly inserted postings. Raises NotifyError on failure."""

    @abstractmethod
    def send(self, items: Sequence[NotificationItem]) -> None:
        raise NotImplementedError


class EmailNotifier(Notifier):
    def __init__(self, to: Sequence[str], send_html: Callable[..., str] | None = None) -> None:
        self.to = list(to)
        self._send_html = send_html or emailer.send_html

    def send(self, items: Sequence[NotificationItem]) -> None:
        if not self.to:
            raise NotifyError("No recipients configured (set 'email_to' or NOTIFY_EMAIL).")
        subject, html = render.render_email(items)
        try:
            message_id = self._send_html(subject=subject, html=html, to=self.to)
        except emailer.EmailSendError as e:
            raise NotifyError(str(e)) from e
        logging_bridge.activity({
            "component": "job_ingest.notifier",
            "op": "email_sent",
            "subject": subject,
            "count": len(items),
            "message_id": message_id,
        })


class LogNotifier(Notifier):
    """Dry-run notifier: the payload goes to the activity log instead of a mailbox."""

    def send(self, items: Sequence[NotificationItem]) -> None:
        subject, _html = render.render_email(items)
        logging_bridge.activity({
            "component": "job_ingest.notifier",
            "op": "notify_dry_run",
            "subject": subject,
            "items": [
                {"source": it.source, "title": it.title, "url": it.url, "posted_date": it.posted_date}
                for it in items
            ],
        })
