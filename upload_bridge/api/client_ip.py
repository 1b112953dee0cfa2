"""
Client IP Resolution

Two strategies run for every request:

- secure: reads only the one source the bridge is configured to trust.
  This is the identity announced to the front-end. If the source carries
  no valid address the request is rejected.
- insecure: tries every common proxy header, then the socket peer. Easy
  for a client to spoof, so it is only ever logged.

Trusted Sources:
```
connect-info                socket peer address (no proxy)
rightmost-x-forwarded-for   last X-Forwarded-For entry
x-real-ip                   X-Real-IP (nginx)
cf-connecting-ip            CF-Connecting-IP (Cloudflare)
true-client-ip              True-Client-IP (Akamai, Cloudflare)
fly-client-ip               Fly-Client-IP (Fly.io)
rightmost-forwarded         last `for=` of the RFC 7239 Forwarded header
```
"""

import ipaddress
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from fastapi import Request

from ..errors import ClientIpRejected


class ClientIpSource(str, Enum):
    """Where the trusted client IP is read from."""
    CONNECT_INFO = "connect-info"
    RIGHTMOST_X_FORWARDED_FOR = "rightmost-x-forwarded-for"
    X_REAL_IP = "x-real-ip"
    CF_CONNECTING_IP = "cf-connecting-ip"
    TRUE_CLIENT_IP = "true-client-ip"
    FLY_CLIENT_IP = "fly-client-ip"
    RIGHTMOST_FORWARDED = "rightmost-forwarded"


# Sources that are a single header holding a bare address
_SINGLE_HEADER_SOURCES = {
    ClientIpSource.X_REAL_IP: "x-real-ip",
    ClientIpSource.CF_CONNECTING_IP: "cf-connecting-ip",
    ClientIpSource.TRUE_CLIENT_IP: "true-client-ip",
    ClientIpSource.FLY_CLIENT_IP: "fly-client-ip",
}


@dataclass
class ClientIdentity:
    """Resolved caller addresses for one request."""
    secure: str
    insecure: str


def parse_ip(value: str) -> Optional[str]:
    """
    Parse an address as found in proxy headers.

    Accepts bare addresses, "1.2.3.4:port" and "[v6]:port".

    Returns:
        Canonical address string, or None if unparsable
    """
    value = value.strip().strip('"')
    if not value:
        return None

    if value.startswith('['):
        end = value.find(']')
        if end == -1:
            return None
        value = value[1:end]
    elif value.count(':') == 1:
        value = value.split(':', 1)[0]

    try:
        return str(ipaddress.ip_address(value))
    except ValueError:
        return None


def _x_forwarded_for(request: Request) -> List[str]:
    entries = []
    for header in request.headers.getlist("x-forwarded-for"):
        entries.extend(part.strip() for part in header.split(',') if part.strip())
    return entries


def _forwarded_for(request: Request) -> List[str]:
    """Collect every `for=` value from Forwarded headers, in order."""
    values = []
    for header in request.headers.getlist("forwarded"):
        for element in header.split(','):
            for pair in element.split(';'):
                key, _, val = pair.partition('=')
                if key.strip().lower() == 'for' and val.strip():
                    values.append(val.strip())
    return values


def _peer(request: Request) -> Optional[str]:
    if request.client is None:
        return None
    return parse_ip(request.client.host)


def secure_ip(request: Request, source: ClientIpSource) -> str:
    """
    Read the client IP from the trusted source only.

    Raises:
        ClientIpRejected: the source is missing, ambiguous or unparsable
    """
    source = ClientIpSource(source)
    ip = None

    if source is ClientIpSource.CONNECT_INFO:
        ip = _peer(request)
    elif source is ClientIpSource.RIGHTMOST_X_FORWARDED_FOR:
        entries = _x_forwarded_for(request)
        if entries:
            ip = parse_ip(entries[-1])
    elif source is ClientIpSource.RIGHTMOST_FORWARDED:
        entries = _forwarded_for(request)
        if entries:
            ip = parse_ip(entries[-1])
    else:
        headers = request.headers.getlist(_SINGLE_HEADER_SOURCES[source])
        # More than one copy means something in front of us is misconfigured
        if len(headers) == 1:
            ip = parse_ip(headers[0])

    if ip is None:
        raise ClientIpRejected(f"No valid client IP from {source.value}")
    return ip


def insecure_ip(request: Request) -> str:
    """Best-effort client IP from any header. Never fails; log use only."""
    candidates = _x_forwarded_for(request)[:1]
    candidates += request.headers.getlist("x-real-ip")[:1]
    candidates += _forwarded_for(request)[:1]

    for candidate in candidates:
        ip = parse_ip(candidate)
        if ip:
            return ip

    return _peer(request) or "unknown"


def resolve_client_identity(request: Request, source: ClientIpSource) -> ClientIdentity:
    """Run both strategies for a request."""
    return ClientIdentity(
        secure=secure_ip(request, source),
        insecure=insecure_ip(request),
    )


# === FastAPI dependencies ===

def client_identity(request: Request) -> ClientIdentity:
    """Resolve the caller using the source configured on the app."""
    return resolve_client_identity(request, request.app.state.client_ip_source)
