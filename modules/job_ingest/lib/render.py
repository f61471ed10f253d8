from __future__ import annotations

from collections.abc import Iterable

from . import utils
from .models import NotificationItem


def group_by_source(items: Iterable[NotificationItem]) -> dict[str, list[NotificationItem]]:
    out: dict[str, list[NotificationItem]] = {}
    for it in items:
        out.setdefault(it.source, []).append(it)
    return out


def build_subject(by_source: dict[str, list[NotificationItem]]) -> str:
    total = sum(len(v) for v in by_source.values())
    sources = [src for src, items in by_source.items() if items]
    if len(sources) == 1:
        return f"Job Watch - {total} new at {sources[0]}"
    return f"Job Watch - {total} new jobs ({len(sources)} companies)"


def build_tables(by_source: dict[str, list[NotificationItem]]) -> str:
    """
    One HTML section per source, sources sorted by name:

      <h3>{source}</h3>
      <table> Title | Posted | Link </table>
    """
    sections: list[str] = []
    for source, items in sorted(by_source.items()):
        row_html: list[str] = []
        for it in items:
            link_html = f'<a href="{utils.esc(it.url)}">{utils.esc(it.url)}</a>'
            row_html.append(
                f"<tr><td>{utils.esc(it.title or '(no title)')}</td>"
                f"<td>{utils.esc(it.posted_date or '')}</td><td>{link_html}</td></tr>"
            )
        table_html = (
            "<table border='1' cellspacing='0' cellpadding='6'>"
            "<tr><th>Title</th><th>Posted</th><th>Link</th></tr>" + "".join(row_html) + "</table>"
        )
        sections.append(f"<h3>{utils.esc(source)}</h3>\n{table_html}")
    return "\n".join(sections)


def wrap_document(content_html: str, *, heading: str | None = None, intro: str | None = None) -> str:
    parts: list[str] = ["<div>"]
    if heading:
        parts.append(f"<h2>{utils.esc(heading)}</h2>")
    if intro:
        parts.append(f"<p>{utils.esc(intro)}</p>")
    parts.append(content_html)
    parts.append("</div>")
    return "\n".join(parts)


def summary_message(by_source: dict[str, list[NotificationItem]]) -> str:
    """e.g. "3 new postings across 2 sources" """
    total = sum(len(v) for v in by_source.values())
    num_sources = len([src for src, items in by_source.items() if items])
    return f"{total} new postings across {num_sources} sources"


def render_email(items: Iterable[NotificationItem]) -> tuple[str, str]:
    """(subject, html) for one aggregate notification."""
    by_source = group_by_source(items)
    html = wrap_document(build_tables(by_source), heading="Job Watch", intro=summary_message(by_source))
    return build_subject(by_source), html
