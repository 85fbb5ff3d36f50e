from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import httpx
import structlog

from app.core.config import get_settings

logger = structlog.get_logger(__name__)

DEFAULT_PAGERDUTY_EVENTS_URL = "https://events.pagerduty.com/v2/enqueue"
ALERT_SOURCE = "paid-access-engine"
ALERT_COMPONENT = "paid-access-backend"
VALID_SEVERITIES = ("critical", "error", "warning", "info")
SEVERITY_COLOR = {
    "critical": "#B42318",
    "error": "#F04438",
    "warning": "#F79009",
    "info": "#1570EF",
}
# The first reference present in the payload scopes PagerDuty deduplication.
DEDUP_PAYLOAD_KEYS = ("payment_intent_ref", "subscription_ref", "session_ref")


@dataclass(frozen=True)
class AlertRoute:
    channels: tuple[str, ...]
    severity: str
    escalation_tier: str


@dataclass(frozen=True)
class AlertTarget:
    channel: str
    url: str


@dataclass(frozen=True)
class AlertMessage:
    event: str
    payload: dict[str, object]
    sent_at: datetime
    route: AlertRoute
    app_env: str
    pagerduty_routing_key: str


DEFAULT_ALERT_ROUTE = AlertRoute(channels=("generic",), severity="warning", escalation_tier="ops_l3")
EVENT_ALERT_ROUTES = {
    "access_reconciliation_diff_detected": AlertRoute(
        channels=("pagerduty", "slack", "generic"),
        severity="critical",
        escalation_tier="ops_l1",
    ),
    "access_donation_transfer_review_required": AlertRoute(
        channels=("pagerduty", "slack", "generic"),
        severity="error",
        escalation_tier="ops_l1",
    ),
    "access_grants_repaired": AlertRoute(
        channels=("slack", "generic"),
        severity="warning",
        escalation_tier="ops_l2",
    ),
}


def _setting_str(settings: object, attr: str) -> str:
    value = getattr(settings, attr, "")
    return value.strip() if isinstance(value, str) else ""


def _compact_json(payload: dict[str, object]) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def _generic_body(message: AlertMessage) -> dict[str, Any]:
    return {
        "event": message.event,
        "payload": message.payload,
        "sent_at": message.sent_at.isoformat(),
        "severity": message.route.severity,
        "escalation_tier": message.route.escalation_tier,
    }


def _slack_body(message: AlertMessage) -> dict[str, Any]:
    route = message.route
    fields = [
        ("Environment", message.app_env, True),
        ("Sent At", message.sent_at.isoformat(), True),
        ("Event", message.event, False),
        ("Payload", _compact_json(message.payload), False),
    ]
    return {
        "text": f"[{route.severity.upper()}][{route.escalation_tier}] {message.event}",
        "attachments": [
            {
                "color": SEVERITY_COLOR.get(route.severity, SEVERITY_COLOR["warning"]),
                "fields": [
                    {"title": title, "value": value, "short": short}
                    for title, value, short in fields
                ],
            }
        ],
    }


def _dedup_key(message: AlertMessage) -> str:
    for key in DEDUP_PAYLOAD_KEYS:
        value = message.payload.get(key)
        if isinstance(value, str) and value:
            return f"{message.event}:{value}"
    return f"{message.event}:{message.route.escalation_tier}"


def _pagerduty_body(message: AlertMessage) -> dict[str, Any]:
    route = message.route
    return {
        "routing_key": message.pagerduty_routing_key,
        "event_action": "trigger",
        "dedup_key": _dedup_key(message),
        "payload": {
            "summary": f"[{message.app_env}] {message.event}",
            "source": f"{ALERT_SOURCE}/{message.app_env}",
            "severity": route.severity,
            "timestamp": message.sent_at.isoformat(),
            "component": ALERT_COMPONENT,
            "group": route.escalation_tier,
            "custom_details": {
                "event": message.event,
                "payload": message.payload,
                "escalation_tier": route.escalation_tier,
            },
        },
    }


BODY_BUILDERS: dict[str, Callable[[AlertMessage], dict[str, Any]]] = {
    "generic": _generic_body,
    "slack": _slack_body,
    "pagerduty": _pagerduty_body,
}


def _policy_override(*, event: str, policy_raw: str) -> dict[str, object] | None:
    if not policy_raw:
        return None
    try:
        policy = json.loads(policy_raw)
    except json.JSONDecodeError:
        logger.warning("ops_alert_policy_parse_failed")
        return None
    if not isinstance(policy, dict):
        logger.warning("ops_alert_policy_invalid_shape")
        return None
    for key in (event, "*"):
        override = policy.get(key)
        if isinstance(override, dict):
            return override
    return None


def _override_channels(raw: object, fallback: tuple[str, ...]) -> tuple[str, ...]:
    if not isinstance(raw, list):
        return fallback
    channels: list[str] = []
    for item in raw:
        name = item.strip().lower() if isinstance(item, str) else ""
        if name in BODY_BUILDERS and name not in channels:
            channels.append(name)
    return tuple(channels) or fallback


def _override_text(raw: object, fallback: str, *, allowed: tuple[str, ...] | None = None) -> str:
    if not isinstance(raw, str) or not raw.strip():
        return fallback
    if allowed is None:
        return raw.strip()
    value = raw.strip().lower()
    return value if value in allowed else fallback


def resolve_alert_route(*, event: str, policy_raw: str) -> AlertRoute:
    base = EVENT_ALERT_ROUTES.get(event, DEFAULT_ALERT_ROUTE)
    override = _policy_override(event=event, policy_raw=policy_raw)
    if override is None:
        return base
    return AlertRoute(
        channels=_override_channels(override.get("channels"), base.channels),
        severity=_override_text(override.get("severity"), base.severity, allowed=VALID_SEVERITIES),
        escalation_tier=_override_text(override.get("escalation_tier"), base.escalation_tier),
    )


def _channel_urls(settings: object) -> dict[str, str]:
    urls = {
        "generic": _setting_str(settings, "ops_alert_webhook_url"),
        "slack": _setting_str(settings, "ops_alert_slack_webhook_url"),
    }
    # PagerDuty is only reachable with a routing key.
    if _setting_str(settings, "ops_alert_pagerduty_routing_key"):
        urls["pagerduty"] = (
            _setting_str(settings, "ops_alert_pagerduty_events_url") or DEFAULT_PAGERDUTY_EVENTS_URL
        )
    return urls


def resolve_alert_targets(*, route: AlertRoute, settings: object) -> list[AlertTarget]:
    urls = _channel_urls(settings)
    targets = [
        AlertTarget(channel=channel, url=urls[channel])
        for channel in route.channels
        if urls.get(channel)
    ]
    if not targets and urls["generic"]:
        targets.append(AlertTarget(channel="generic", url=urls["generic"]))
    return targets


def build_alert_body(
    *,
    channel: str,
    event: str,
    payload: dict[str, object],
    sent_at: datetime,
    route: AlertRoute,
    app_env: str,
    pagerduty_routing_key: str,
) -> dict[str, Any]:
    builder = BODY_BUILDERS.get(channel)
    if builder is None:
        raise ValueError(f"Unsupported alert channel: {channel}")
    return builder(
        AlertMessage(
            event=event,
            payload=payload,
            sent_at=sent_at,
            route=route,
            app_env=app_env,
            pagerduty_routing_key=pagerduty_routing_key,
        )
    )


async def _deliver(client: httpx.AsyncClient, target: AlertTarget, body: dict[str, Any], *, event: str) -> bool:
    try:
        response = await client.post(target.url, json=body)
        response.raise_for_status()
    except httpx.HTTPError as exc:
        logger.warning(
            "ops_alert_delivery_failed",
            alert_event=event,
            provider=target.channel,
            error_type=type(exc).__name__,
        )
        return False
    return True


async def send_ops_alert(*, event: str, payload: dict[str, object]) -> bool:
    settings = get_settings()
    route = resolve_alert_route(
        event=event,
        policy_raw=_setting_str(settings, "ops_alert_escalation_policy_json"),
    )
    targets = resolve_alert_targets(route=route, settings=settings)
    if not targets:
        logger.info("ops_alert_skipped_no_targets", alert_event=event)
        return False

    sent_at = datetime.now(timezone.utc)
    app_env = _setting_str(settings, "app_env") or "dev"
    routing_key = _setting_str(settings, "ops_alert_pagerduty_routing_key")

    delivered_to: list[str] = []
    failed_to: list[str] = []
    async with httpx.AsyncClient(timeout=5.0) as client:
        for target in targets:
            body = build_alert_body(
                channel=target.channel,
                event=event,
                payload=payload,
                sent_at=sent_at,
                route=route,
                app_env=app_env,
                pagerduty_routing_key=routing_key,
            )
            ok = await _deliver(client, target, body, event=event)
            (delivered_to if ok else failed_to).append(target.channel)

    log_fields = {
        "alert_event": event,
        "severity": route.severity,
        "escalation_tier": route.escalation_tier,
        "failed_to": failed_to,
    }
    if not delivered_to:
        logger.error("ops_alert_delivery_exhausted", **log_fields)
        return False
    logger.info("ops_alert_delivered", delivered_to=delivered_to, **log_fields)
    return True
