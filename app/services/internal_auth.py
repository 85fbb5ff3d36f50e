from __future__ import annotations

import ipaddress
import secrets
from functools import lru_cache

from fastapi import Request

INTERNAL_TOKEN_HEADER = "X-Internal-Token"
IpNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network


def is_valid_internal_token(*, expected_token: str, received_token: str | None) -> bool:
    if not expected_token or not received_token:
        return False
    return secrets.compare_digest(expected_token, received_token)


@lru_cache(maxsize=32)
def _parse_allowlist(allowlist: str) -> tuple[IpNetwork, ...]:
    networks: list[IpNetwork] = []
    for raw_entry in allowlist.split(","):
        entry = raw_entry.strip()
        if not entry:
            continue
        try:
            networks.append(ipaddress.ip_network(entry, strict=False))
        except ValueError:
            continue
    return tuple(networks)


def _parse_ip(value: str | None) -> str | None:
    candidate = (value or "").strip()
    if not candidate:
        return None
    try:
        return str(ipaddress.ip_address(candidate))
    except ValueError:
        return None


def is_client_ip_allowed(*, client_ip: str | None, allowlist: str) -> bool:
    parsed_ip = _parse_ip(client_ip)
    if parsed_ip is None:
        return False
    address = ipaddress.ip_address(parsed_ip)
    return any(address in network for network in _parse_allowlist(allowlist))


def extract_client_ip(request: Request, *, trusted_proxies: str = "") -> str | None:
    client_host = _parse_ip(request.client.host if request.client is not None else None)
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for and is_client_ip_allowed(client_ip=client_host, allowlist=trusted_proxies):
        return _parse_ip(forwarded_for.split(",", maxsplit=1)[0])
    return client_host


def internal_access_denial(
    request: Request,
    *,
    expected_token: str,
    allowlist: str,
    trusted_proxies: str = "",
) -> tuple[str | None, str | None]:
    """Returns (denial_reason, client_ip); the reason is None when access is allowed."""
    client_ip = extract_client_ip(request, trusted_proxies=trusted_proxies)
    if not is_valid_internal_token(
        expected_token=expected_token,
        received_token=request.headers.get(INTERNAL_TOKEN_HEADER),
    ):
        return "invalid_token", client_ip
    if not is_client_ip_allowed(client_ip=client_ip, allowlist=allowlist):
        return "ip_not_allowed", client_ip
    return None, client_ip
