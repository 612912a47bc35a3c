"""
Notification content for deliveries.

Renders a subject, a plain-text body and an HTML body for one event as seen
by one subscription.
"""

import html
import json
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel

from .models import Event, EventType, Subscription

SUBJECT_PREFIX = "[changewatch]"
MAX_VALUE_LENGTH = 200
NAME_FIELDS = ("name", "title")

_STYLE_BODY = (
    "font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; "
    "max-width: 600px; margin: 0 auto; padding: 20px;"
)
_STYLE_CELL = "padding: 8px; border: 1px solid #ddd;"


class Notification(BaseModel):
    subject: str
    text: str
    html: str


def entity_name(payload: Dict[str, Any]) -> Optional[str]:
    """Human label for the entity: its ``name`` or ``title`` field if present."""
    entity = payload.get("entity") or {}
    for key in NAME_FIELDS:
        value = entity.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def format_value(value: Any) -> str:
    if value is None:
        return "-"
    if isinstance(value, str):
        text = value
    else:
        text = json.dumps(value, ensure_ascii=False, default=str)
    if len(text) > MAX_VALUE_LENGTH:
        text = text[:MAX_VALUE_LENGTH - 3] + "..."
    return text


def _table(headers: List[str], rows: List[Tuple[str, ...]]) -> str:
    head = "".join(
        f'<th style="text-align: left; {_STYLE_CELL}">{html.escape(h)}</th>' for h in headers
    )
    body = "".join(
        "<tr>" + "".join(f'<td style="{_STYLE_CELL}">{html.escape(c)}</td>' for c in row) + "</tr>"
        for row in rows
    )
    return (
        '<table style="width: 100%; border-collapse: collapse; margin: 16px 0;">'
        f'<thead><tr style="background: #f5f5f5;">{head}</tr></thead>'
        f"<tbody>{body}</tbody></table>"
    )


def _page(title: str, subscription: Subscription, name: Optional[str], inner: str) -> str:
    label = f'<p style="color: #333;"><strong>{html.escape(name)}</strong></p>' if name else ""
    return (
        '<!DOCTYPE html><html><head><meta charset="utf-8"></head>'
        f'<body style="{_STYLE_BODY}">'
        f'<h2 style="color: #1a1a1a; margin-bottom: 4px;">{html.escape(title)}</h2>'
        f'<p style="color: #666; margin-top: 0;">Subscription: {html.escape(subscription.name)}</p>'
        f"{label}{inner}"
        '<p style="color: #999; font-size: 12px;">Sent by changewatch</p>'
        "</body></html>"
    )


def _changed(event: Event, subscription: Subscription, name: Optional[str]) -> Notification:
    changes = event.changes
    subject = f"{SUBJECT_PREFIX} {name} changed" if name else f"{SUBJECT_PREFIX} Entity changed"
    if changes:
        subject += " (" + ", ".join(c.field for c in changes) + ")"

    rows = [(c.field, format_value(c.old), format_value(c.new)) for c in changes]
    text_lines = [f"Entity changed ({subscription.name})"]
    if name:
        text_lines.append(name)
    text_lines += [f"  {field}: {old} -> {new}" for field, old, new in rows]

    return Notification(
        subject=subject,
        text="\n".join(text_lines),
        html=_page("Entity Changed", subscription, name, _table(["Field", "Old", "New"], rows)),
    )


def _appeared(event: Event, subscription: Subscription, name: Optional[str]) -> Notification:
    reactivated = bool(event.payload.get("reactivated"))
    title = "Entity Reappeared" if reactivated else "New Entity Appeared"
    if name:
        subject = f"{SUBJECT_PREFIX} {'Back' if reactivated else 'New'}: {name}"
    else:
        subject = f"{SUBJECT_PREFIX} {title}"

    entity = event.payload.get("entity") or {}
    rows = [(str(k), format_value(v)) for k, v in entity.items()]
    text_lines = [f"{title} ({subscription.name})"]
    if name:
        text_lines.append(name)
    text_lines += [f"  {k}: {v}" for k, v in rows]

    return Notification(
        subject=subject,
        text="\n".join(text_lines),
        html=_page(title, subscription, name, _table(["Field", "Value"], rows)),
    )


def _disappeared(event: Event, subscription: Subscription, name: Optional[str]) -> Notification:
    label = name or event.payload.get("external_id") or event.entity_id or "unknown"
    subject = f"{SUBJECT_PREFIX} {name} disappeared" if name else f"{SUBJECT_PREFIX} Entity disappeared"
    notice = f"The entity {label} is no longer present on the monitored page."
    return Notification(
        subject=subject,
        text=f"Entity disappeared ({subscription.name})\n{notice}",
        html=_page(
            "Entity Disappeared",
            subscription,
            None,
            f'<p style="color: #333;">The entity <strong>{html.escape(label)}</strong> '
            "is no longer present on the monitored page.</p>",
        ),
    )


_RENDERERS = {
    EventType.ENTITY_CHANGED: _changed,
    EventType.ENTITY_APPEARED: _appeared,
    EventType.ENTITY_DISAPPEARED: _disappeared,
}


def build_notification(event: Event, subscription: Subscription) -> Notification:
    """Render the notification for ``event`` as delivered to ``subscription``."""
    return _RENDERERS[event.event_type](event, subscription, entity_name(event.payload))
