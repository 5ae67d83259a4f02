"""
Outbound email via an HTTP mail API.

Posts ``{"from", "to", "subject", "html", "text"}`` JSON to ``MAIL_API_URL``
with ``MAIL_API_KEY`` as a bearer token (the shape accepted by Resend,
Postmark-style relays and most transactional providers).  Falls back to
logging the email content when no provider is configured.
"""

from __future__ import annotations

import logging
from html import escape

import requests
from flask import current_app

logger = logging.getLogger(__name__)

_TIMEOUT = 15


def send_email(to: str | list[str], subject: str, html_body: str, text_body: str = "") -> bool:
    """Send an email through the configured provider.

    Args:
        to: Recipient address or list of addresses.
        subject: Email subject line.
        html_body: HTML email body.
        text_body: Plain text email body (fallback).

    Returns:
        True if the provider accepted the message, False otherwise.
    """
    recipients = [to] if isinstance(to, str) else list(to)
    if not recipients:
        return False

    api_url = current_app.config.get("MAIL_API_URL")
    if not api_url:
        logger.info(
            "Email not sent (mail provider not configured): to=%r subject=%r",
            recipients,
            subject,
        )
        logger.debug("Email body (text): %s", text_body or html_body[:500])
        return False

    payload = {
        "from": current_app.config["MAIL_FROM"],
        "to": recipients,
        "subject": subject,
        "html": html_body,
        "text": text_body,
    }
    headers = {"Content-Type": "application/json"}
    api_key = current_app.config.get("MAIL_API_KEY")
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"

    try:
        response = requests.post(api_url, json=payload, headers=headers, timeout=_TIMEOUT)
    except requests.RequestException as exc:
        logger.error("Mail API network error: to=%r error=%s", recipients, exc)
        return False

    if response.status_code >= 300:
        logger.error(
            "Mail API rejected message (HTTP %s): to=%r subject=%r body=%s",
            response.status_code,
            recipients,
            subject,
            response.text[:200],
        )
        return False

    logger.info("Email sent: to=%r subject=%r status=%d", recipients, subject, response.status_code)
    return True


def render_simple_email(title: str, paragraphs: list[str], link: tuple[str, str] | None = None) -> tuple[str, str]:
    """Build a minimal ``(html, text)`` pair for transactional emails.

    Args:
        title: Heading shown at the top.
        paragraphs: Body paragraphs (plain text, escaped for HTML).
        link: Optional ``(label, url)`` call to action.
    """
    app_name = current_app.config.get("APP_NAME", "DMARC Analyser")
    html_parts = [f"<h2>{escape(title)}</h2>"]
    html_parts.extend(f"<p>{escape(p)}</p>" for p in paragraphs)
    text_parts = [title, ""] + paragraphs
    if link:
        label, url = link
        html_parts.append(f'<p><a href="{escape(url)}">{escape(label)}</a></p>')
        text_parts += ["", f"{label}: {url}"]
    html_parts.append(f'<p style="color:#6b7280;font-size:12px">{escape(app_name)}</p>')
    return "\n".join(html_parts), "\n".join(text_parts)
