from __future__ import annotations

from ipaddress import ip_address, ip_network
from typing import Callable, Optional

from fastapi import Header, Request, Response

from warden.logging import get_logger
from warden.service.rate_limit import RateLimitDecision
from warden.service.runtime import get_runtime

logger = get_logger(__name__)


def _is_trusted(peer: str, trusted: list[str]) -> bool:
    try:
        addr = ip_address(peer)
    except ValueError:
        return False
    for entry in trusted:
        try:
            if addr in ip_network(entry, strict=False):
                return True
        except ValueError:
            continue
    return False


def get_client_ip(request: Request) -> str:
    """Resolve the caller's address, honouring proxy headers only from trusted peers."""

    peer = request.client.host if request.client else "unknown"
    trusted = get_runtime().settings.trusted_proxies
    if not trusted or not _is_trusted(peer, trusted):
        return peer
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        # Walk right to left past our own proxies to the first untrusted hop.
        for hop in reversed([h.strip() for h in forwarded.split(",") if h.strip()]):
            if not _is_trusted(hop, trusted):
                return hop
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return peer


def apply_rate_limit_headers(response: Response, decision: RateLimitDecision) -> None:
    response.headers["X-RateLimit-Limit"] = str(decision.limit)
    response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
    response.headers["X-RateLimit-Reset"] = str(decision.reset_seconds)


def rate_limited(operation: str) -> Callable:
    """Dependency factory applying the configured per-IP rule for ``operation``."""

    async def _dependency(request: Request, response: Response) -> RateLimitDecision:
        runtime = get_runtime()
        rule = runtime.rate_limit_rules[operation]
        decision = await runtime.rate_limiter.enforce(
            get_client_ip(request), rule, endpoint=request.url.path
        )
        if rule.enabled and runtime.rate_limiter.enabled:
            apply_rate_limit_headers(response, decision)
        return decision

    return _dependency


async def require_user_id(authorization: Optional[str] = Header(default=None)) -> str:
    return await get_runtime().auth.authenticate(authorization)
