"""
rendering.py — Turn a notification request into channel-ready content.

Rendering happens exactly once, at intake. The result is stored in the
retry record and redelivered unchanged.

    email   subject "Notification: <title>", escaped HTML + plain text
    sms     "<title>: <message>"
    push    {"title", "body", "data": metadata}
"""

from __future__ import annotations

import html

from backend.app.notifications.models import Channel, NotificationRequest, RenderedContent

EMAIL_SUBJECT_PREFIX = "Notification: "


def _render_email(request: NotificationRequest) -> RenderedContent:
    title = html.escape(request.title)
    paragraphs = "".join(
        f"<p>{html.escape(line)}</p>"
        for line in request.message.splitlines() if line.strip()
    ) or "<p></p>"
    return RenderedContent(
        subject=f"{EMAIL_SUBJECT_PREFIX}{request.title}",
        html=f"<h2>{title}</h2>{paragraphs}",
        text=f"{request.title}\n\n{request.message}",
    )


def _render_sms(request: NotificationRequest) -> RenderedContent:
    return RenderedContent(text=f"{request.title}: {request.message}")


def _render_push(request: NotificationRequest) -> RenderedContent:
    return RenderedContent(
        subject=request.title,
        text=request.message,
        push_payload={
            "title": request.title,
            "body": request.message,
            "data": dict(request.metadata),
        },
    )


_RENDERERS = {
    Channel.EMAIL: _render_email,
    Channel.SMS:   _render_sms,
    Channel.PUSH:  _render_push,
}


def render_content(request: NotificationRequest) -> RenderedContent:
    return _RENDERERS[Channel(request.channel)](request)
