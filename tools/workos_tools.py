"""WorkOS identity-provider tools.

Calls the WorkOS REST API directly (no SDK). Functions return plain dicts and
report failures in an 'error' key instead of raising, except verify_webhook,
which raises WebhookVerificationError so the HTTP layer can answer 401.
"""
import hashlib
import hmac
import json
import logging
import time
from typing import Any, Dict, List, Optional

import requests

import sync_config

logger = logging.getLogger(__name__)

WORKOS_BASE = "https://api.workos.com"
SIGNATURE_TOLERANCE_SECONDS = 180


class WebhookVerificationError(Exception):
    """Raised when a webhook signature header is missing, stale, or wrong."""


def _api_key() -> str:
    return sync_config.workos_api_key()


def _headers() -> Dict[str, str]:
    return {
        "Authorization": f"Bearer {_api_key()}",
        "Content-Type": "application/json",
    }


def list_events(
    events: List[str],
    after: Optional[str] = None,
    range_start: Optional[str] = None,
    limit: int = 100,
) -> Dict[str, Any]:
    """List events from the Events API, oldest first.

    Args:
        events: Event types to include.
        after: Cursor (an event id) to continue from.
        range_start: ISO timestamp; only used when no cursor is given.
        limit: Page size (max 100).

    Returns:
        Dict with 'data' (list of events) and 'after' (next cursor or None).
    """
    params: Dict[str, Any] = {"events": events, "limit": limit, "order": "asc"}
    if after:
        params["after"] = after
    elif range_start:
        params["range_start"] = range_start
    try:
        resp = requests.get(f"{WORKOS_BASE}/events", headers=_headers(), params=params, timeout=30)
        resp.raise_for_status()
        body = resp.json()
        return {
            "data": body.get("data", []),
            "after": (body.get("list_metadata") or {}).get("after"),
        }
    except Exception as exc:
        return {"data": [], "after": None, "error": str(exc)}


def list_user_sessions(user_id: str) -> Dict[str, Any]:
    try:
        resp = requests.get(
            f"{WORKOS_BASE}/user_management/users/{user_id}/sessions",
            headers=_headers(),
            timeout=10,
        )
        resp.raise_for_status()
        return {"sessions": resp.json().get("data", [])}
    except Exception as exc:
        return {"sessions": [], "error": str(exc)}


def revoke_user_sessions(user_id: str) -> Dict[str, Any]:
    """Revoke every active session of a user.

    Returns:
        Dict with 'revoked' count and, if anything failed, 'error'.
    """
    listed = list_user_sessions(user_id)
    if "error" in listed:
        return {"revoked": 0, "error": listed["error"]}

    revoked = 0
    failures = []
    for session in listed["sessions"]:
        if session.get("status", "active") != "active":
            continue
        try:
            resp = requests.post(
                f"{WORKOS_BASE}/user_management/sessions/revoke",
                headers=_headers(),
                json={"session_id": session["id"]},
                timeout=10,
            )
            resp.raise_for_status()
            revoked += 1
        except Exception as exc:
            failures.append(f"{session.get('id')}: {exc}")

    result: Dict[str, Any] = {"revoked": revoked}
    if failures:
        result["error"] = "; ".join(failures)
    return result


def delete_user(user_id: str) -> Dict[str, Any]:
    """Delete a user at WorkOS. The user.deleted event does the local cleanup."""
    try:
        resp = requests.delete(
            f"{WORKOS_BASE}/user_management/users/{user_id}", headers=_headers(), timeout=10
        )
        resp.raise_for_status()
        return {"id": user_id, "deleted": True}
    except Exception as exc:
        return {"id": user_id, "deleted": False, "error": str(exc)}


def _parse_signature_header(header: str) -> Dict[str, str]:
    parts = {}
    for item in header.split(","):
        kv = item.strip().split("=", 1)
        if len(kv) == 2:
            parts[kv[0]] = kv[1]
    return parts


def verify_webhook(
    body: bytes,
    signature_header: Optional[str],
    secret: Optional[str] = None,
    tolerance: int = SIGNATURE_TOLERANCE_SECONDS,
    now: Optional[float] = None,
) -> Dict[str, Any]:
    """Verify a WorkOS-Signature header and return the decoded body.

    Header format: 't=<unix ms>, v1=<hex hmac-sha256 of "<t>.<body>">'.
    """
    if secret is None:
        secret = sync_config.workos_webhook_secret()
    if not signature_header:
        raise WebhookVerificationError("Missing signature header")

    parts = _parse_signature_header(signature_header)
    timestamp, signature = parts.get("t"), parts.get("v1")
    if not timestamp or not signature:
        raise WebhookVerificationError("Malformed signature header")
    try:
        issued_at = int(timestamp) / 1000.0
    except ValueError:
        raise WebhookVerificationError("Malformed signature timestamp")

    current = time.time() if now is None else now
    if abs(current - issued_at) > tolerance:
        raise WebhookVerificationError("Signature timestamp outside tolerance")

    expected = hmac.new(
        secret.encode("utf-8"),
        f"{timestamp}.".encode("utf-8") + body,
        hashlib.sha256,
    ).hexdigest()
    if not hmac.compare_digest(expected, signature):
        raise WebhookVerificationError("Signature mismatch")

    try:
        return json.loads(body)
    except ValueError:
        raise WebhookVerificationError("Body is not valid JSON")
