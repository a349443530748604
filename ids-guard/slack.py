from __future__ import annotations

from typing import Any, Dict, Optional

import requests
import structlog

log = structlog.get_logger(__name__)

_COLORS = {"critical": "danger", "high": "danger", "medium": "warning", "low": "good"}


def build_payload(subject: str, body: str, severity: str = "medium", dashboard_url: Optional[str] = None) -> Dict[str, Any]:
    attachment: Dict[str, Any] = {
        "fallback": subject,
        "color": _COLORS.get(severity.lower(), "warning"),
        "text": body,
        "fields": [
            {"title": "Severity", "value": severity.upper(), "short": True},
        ],
    }
    if dashboard_url:
        attachment["actions"] = [{"type": "button", "text": "Open Dashboard", "url": dashboard_url}]

    return {
        "text": f":rotating_light: *{subject}*",
        "attachments": [attachment],
    }


def post(webhook_url: str, payload: Dict[str, Any], timeout: float = 3.0) -> bool:
    """Send a payload to a Slack incoming webhook. Returns True on success."""
    try:
        response = requests.post(webhook_url, json=payload, timeout=timeout)
        response.raise_for_status()
        return True
    except requests.RequestException as exc:
        log.warning("slack_post_failed", error=str(exc))
        return False
