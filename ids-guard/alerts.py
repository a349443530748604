from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# Notification templates keyed by alert kind. Fields are filled from the meta
# dict passed to build_alert; missing keys render as "-".
ALERT_TEMPLATES: Dict[str, Dict[str, str]] = {
    "attack_medium": {
        "title": "Security alert: {rule} from {source}",
        "explanation": (
            "A {severity} severity {rule} attempt was detected from {source}. Detail: {detail}. "
            "The source has been restricted for {block_minutes} minutes."
        ),
        "remediation": "Review recent traffic from {source} and confirm the restriction is expected.",
    },
    "attack_high": {
        "title": "URGENT: {rule} blocked from {source}",
        "explanation": (
            "A {severity} severity {rule} attack was detected from {source}. Detail: {detail}. "
            "The source has been blocked permanently."
        ),
        "remediation": "{advisory}",
    },
    "escalation": {
        "title": "Security response escalated for {source}",
        "explanation": (
            "{source} has been seen in {total_attacks} attacks (threshold {threshold}). "
            "Attack types: {attack_types}. The source is now blocked permanently."
        ),
        "remediation": "Investigate {source} and decide whether the block should be lifted manually.",
    },
    "emergency": {
        "title": "EMERGENCY: {trigger_type} incident {incident_id}",
        "explanation": (
            "Incident {incident_id} ({trigger_type}, severity {severity}) was triggered at {triggered_at}.\n"
            "Reason: {reason}\nStatus: {status}\nActions taken:\n{actions}"
        ),
        "remediation": "Log in to the incident console, review incident {incident_id} and take over the response.",
    },
}

_ADVISORIES: Dict[str, str] = {
    "SQL_INJECTION": "Check the storage layer: verify database accounts, recent queries and parameterized query usage.",
    "XSS": "Check session integrity: invalidate suspicious sessions and review output encoding on the targeted page.",
    "PATH_TRAVERSAL": "Check file exposure: confirm static paths are confined and no sensitive files were served.",
    "COMMAND_INJECTION": "Check the host for spawned processes and outbound connections started by the application user.",
    "BRUTE_FORCE": "Enable account protection: lock targeted accounts and require MFA for risky logins.",
}


def advisory_for(rule: str) -> str:
    return _ADVISORIES.get(rule, "Review the event trail for this source and raise monitoring on the affected endpoint.")


class _Defaulting(dict):
    def __missing__(self, key: str) -> str:
        return "-"


def build_alert(kind: str, meta: Dict[str, Any], severity: Optional[str] = None) -> Dict[str, Any]:
    template = ALERT_TEMPLATES.get(kind, {})
    values = _Defaulting(meta)
    explanation = template.get("explanation", "").format_map(values)
    remediation = template.get("remediation", "").format_map(values)
    title = template.get("title", kind.replace("_", " ").title()).format_map(values)

    return {
        "id": f"alert_{uuid.uuid4().hex[:12]}",
        "timestamp": datetime.now(timezone.utc).replace(microsecond=0).isoformat(),
        "kind": kind,
        "title": title,
        "severity": (severity or meta.get("severity") or "medium").lower(),
        "source": meta.get("source"),
        "explanation": explanation,
        "remediation": remediation,
        "body": f"{explanation}\n\nRecommended action: {remediation}" if remediation else explanation,
    }
