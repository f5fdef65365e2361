"""
Inbound platform webhook ingestion.

Raw MeshCentral webhook bodies go through authentication (HMAC-SHA256 over
the raw bytes, or the shared ``secret`` query token), event-name mapping and
payload canonicalization before the registry fans them out to modules.
Processed events can be recorded into a bounded log kept in the owning
module's namespace.
"""

from __future__ import annotations

import copy
import datetime as dt
import hashlib
import hmac
import json
import logging
from collections.abc import Callable, Mapping
from typing import Any

from .contracts import CanonicalEvent, ModuleSettings
from .errors import WebhookRejectedError

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"
EVENT_LOG_KEY = "_eventLog"
PAYLOAD_PREVIEW_CHARS = 500
DEFAULT_MAX_LOG_ENTRIES = 100

DEFAULT_EVENT_MAPPING: dict[str, str] = {
    "serverConnect": "device.connect",
    "serverDisconnect": "device.disconnect",
    "nodeconnect": "device.connect",
    "nodedisconnect": "device.disconnect",
    "userLogin": "user.login",
    "userlogin": "user.login",
    "userLogout": "user.logout",
    "userloginfail": "user.loginFailed",
    "supportRequest": "support.request",
}

Clock = Callable[[], dt.datetime]


def _utc_now() -> dt.datetime:
    return dt.datetime.now(tz=dt.UTC)


def _isoformat(moment: dt.datetime) -> str:
    return moment.isoformat().replace("+00:00", "Z")


def _as_bytes(body: bytes | str) -> bytes:
    return body.encode("utf-8") if isinstance(body, str) else body


def sign_payload(secret: str, body: bytes | str) -> str:
    """Hex HMAC-SHA256 of ``body`` keyed with ``secret``."""
    return hmac.new(secret.encode("utf-8"), _as_bytes(body), hashlib.sha256).hexdigest()


def verify_signature(body: bytes | str, signature: str, secret: str) -> bool:
    """Constant-time check of ``signature``; malformed or truncated values never raise."""
    candidate = signature.strip()
    if candidate.lower().startswith("sha256="):
        candidate = candidate[len("sha256=") :]
    expected = sign_payload(secret, body).encode("ascii")
    return hmac.compare_digest(expected, candidate.lower().encode("utf-8"))


def map_event_type(name: str, mapping: Mapping[str, str] | None = None) -> str:
    """
    Translate a platform event name through ``mapping`` (the built-in table when
    omitted).  Names without a target, or mapped to an empty string, pass through.
    """
    table = mapping if mapping is not None else DEFAULT_EVENT_MAPPING
    return table.get(name) or name


def _first(*values: Any) -> Any:
    for value in values:
        if value is not None and value != "":
            return value
    return None


def _mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def normalize_payload(payload: Mapping[str, Any], *, timestamp: str) -> dict[str, Any]:
    """
    Project the platform's inconsistent field shapes onto one payload.

    Scalar top-level fields pass through untouched; the normalized
    ``deviceName``/``deviceId``/``ipAddress``/``userName``/``groupName``/
    ``groupId`` fields are layered on top and ``timestamp`` is always set.
    The raw payload is kept under ``_original``.
    """
    normalized: dict[str, Any] = {
        key: value
        for key, value in payload.items()
        if isinstance(value, (str, int, float, bool)) and key not in ("action", "event")
    }

    raw_device = payload.get("node") or payload.get("device")
    device = _mapping(raw_device)
    raw_user = payload.get("user")
    user = _mapping(raw_user)
    raw_group = payload.get("mesh") or payload.get("group")
    group = _mapping(raw_group)

    fields = {
        "deviceName": _first(
            payload.get("deviceName"),
            device.get("name"),
            payload.get("nodename"),
            payload.get("nodeName"),
            raw_device if isinstance(raw_device, str) else None,
            "Unknown" if device else None,
        ),
        "deviceId": _first(
            payload.get("deviceId"),
            device.get("_id"),
            device.get("id"),
            payload.get("nodeid"),
            payload.get("nodeId"),
        ),
        "ipAddress": _first(
            payload.get("ipAddress"),
            device.get("ip"),
            device.get("addr"),
            payload.get("ip"),
            payload.get("addr"),
            payload.get("remoteaddr"),
        ),
        "userName": _first(
            payload.get("userName"),
            user.get("name"),
            raw_user if isinstance(raw_user, str) else None,
            payload.get("username"),
        ),
        "groupName": _first(
            payload.get("groupName"),
            group.get("name"),
            raw_group if isinstance(raw_group, str) else None,
            payload.get("meshname"),
            payload.get("meshName"),
            "Unknown" if group else None,
        ),
        "groupId": _first(
            payload.get("groupId"),
            group.get("_id"),
            group.get("id"),
            payload.get("meshid"),
        ),
    }
    normalized.update({key: value for key, value in fields.items() if value is not None})
    normalized["timestamp"] = _first(payload.get("timestamp"), timestamp)
    normalized["_original"] = copy.deepcopy(dict(payload))
    return normalized


def summarize(event_type: str, payload: Mapping[str, Any]) -> str:
    subject = _first(payload.get("deviceName"), payload.get("userName"), payload.get("groupName"))
    if subject is None:
        return event_type
    ip_address = payload.get("ipAddress")
    suffix = f" ({ip_address})" if ip_address else ""
    return f"{event_type}: {subject}{suffix}"


def parse_body(body: bytes | str) -> dict[str, Any]:
    try:
        payload = json.loads(_as_bytes(body) or b"{}")
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise WebhookRejectedError(f"Invalid JSON payload: {exc}") from exc
    if not isinstance(payload, dict):
        raise WebhookRejectedError("Webhook payload must be a JSON object")
    return payload


class EventNormalizer:
    """
    Received -> Authenticated -> Canonicalized pipeline for inbound webhooks.

    Configuration is read from the owning module namespace on every call
    (``incomingSecret``, ``authRequired``, ``eventMapping``, ``logEvents``,
    ``maxLogEntries``) so edits apply without a reload.
    """

    def __init__(self, settings: ModuleSettings, *, clock: Clock | None = None) -> None:
        self._settings = settings
        self._clock = clock or _utc_now

    def authenticate(
        self,
        body: bytes | str,
        config: Mapping[str, Any],
        *,
        signature: str | None = None,
        token: str | None = None,
    ) -> bool:
        """
        Return whether the request was authenticated; raise when it is rejected.

        Without ``authRequired`` a request carrying no credentials, or hitting
        a module with no secret configured, is accepted unauthenticated.
        """
        secret = str(config.get("incomingSecret") or "")
        auth_required = bool(config.get("authRequired", False))
        if auth_required and not secret:
            raise WebhookRejectedError("Webhook secret is not configured", status_code=401)
        if signature:
            if not secret:
                return False
            if not verify_signature(body, signature, secret):
                raise WebhookRejectedError("Invalid webhook signature", status_code=401)
            return True
        if token:
            if not secret:
                return False
            if not hmac.compare_digest(token.encode("utf-8"), secret.encode("utf-8")):
                raise WebhookRejectedError("Invalid webhook secret", status_code=401)
            return True
        if auth_required:
            raise WebhookRejectedError("Webhook signature required", status_code=401)
        return False

    async def process(
        self,
        body: bytes | str,
        *,
        signature: str | None = None,
        token: str | None = None,
    ) -> CanonicalEvent:
        config = self._settings.get_all()
        if not config.get("enabled", True) or not config.get("incomingEnabled", True):
            raise WebhookRejectedError("Incoming webhooks are disabled", status_code=403)

        authenticated = self.authenticate(body, config, signature=signature, token=token)
        payload = parse_body(body)
        name = _first(payload.get("action"), payload.get("event"))
        if not isinstance(name, str):
            raise WebhookRejectedError("Webhook payload is missing an action")

        mapping = config.get("eventMapping")
        event_type = map_event_type(name, mapping if isinstance(mapping, Mapping) else None)
        normalized = normalize_payload(payload, timestamp=_isoformat(self._clock()))
        logger.debug(
            "Inbound webhook %s mapped to %s (authenticated=%s)", name, event_type, authenticated
        )
        if config.get("logEvents", True):
            await self.record(event_type, normalized, payload, config)
        return CanonicalEvent(event_type=event_type, payload=normalized)

    async def record(
        self,
        event_type: str,
        normalized: Mapping[str, Any],
        raw: Mapping[str, Any],
        config: Mapping[str, Any],
    ) -> None:
        """Append to the FIFO event log, evicting the oldest entries beyond the cap."""
        try:
            limit = max(1, int(config.get("maxLogEntries") or DEFAULT_MAX_LOG_ENTRIES))
        except (TypeError, ValueError):
            limit = DEFAULT_MAX_LOG_ENTRIES
        entry = {
            "timestamp": _isoformat(self._clock()),
            "eventType": event_type,
            "summary": summarize(event_type, normalized),
            "payload": json.dumps(raw, default=str)[:PAYLOAD_PREVIEW_CHARS],
        }

        def _append(current: dict[str, Any]) -> dict[str, Any]:
            entries = current.get(EVENT_LOG_KEY)
            entries = list(entries) if isinstance(entries, list) else []
            entries.append(entry)
            current[EVENT_LOG_KEY] = entries[-limit:]
            return current

        await self._settings.update(_append)

    def entries(self, limit: int | None = None) -> list[dict[str, Any]]:
        entries = self._settings.get(EVENT_LOG_KEY) or []
        if limit is not None:
            return entries[-limit:] if limit > 0 else []
        return entries

    async def clear(self) -> None:
        def _clear(current: dict[str, Any]) -> dict[str, Any]:
            current[EVENT_LOG_KEY] = []
            return current

        await self._settings.update(_clear)


__all__ = [
    "DEFAULT_EVENT_MAPPING",
    "EVENT_LOG_KEY",
    "EventNormalizer",
    "PAYLOAD_PREVIEW_CHARS",
    "SIGNATURE_HEADER",
    "map_event_type",
    "normalize_payload",
    "parse_body",
    "sign_payload",
    "summarize",
    "verify_signature",
]
