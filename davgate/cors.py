"""
davgate.cors
~~~~~~~~~~~~
Cross-origin header negotiation.  Runs ahead of authentication so that
preflights and 401 answers still carry the headers a browser needs.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Tuple

Header = Tuple[str, str]


@dataclass(frozen=True)
class CorsPolicy:
    enabled: bool = False
    credentials: bool = False
    allowed_headers: Tuple[str, ...] = ("*",)
    allowed_hosts: Tuple[str, ...] = ("*",)
    allowed_methods: Tuple[str, ...] = ("*",)
    exposed_headers: Tuple[str, ...] = ()
    allow_any_host: bool = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "allow_any_host", "*" in self.allowed_hosts)

    def applies(self, origin: str) -> bool:
        return self.enabled and bool(origin)


def cors_headers(policy: CorsPolicy, origin: str) -> List[Header]:
    """Headers to add to the response for a request from *origin*."""
    headers: List[Header] = []
    host_allowed = origin in policy.allowed_hosts

    if policy.allow_any_host or host_allowed:
        headers.append(("Access-Control-Allow-Headers", ", ".join(policy.allowed_headers)))
        headers.append(("Access-Control-Allow-Methods", ", ".join(policy.allowed_methods)))
        if policy.credentials:
            headers.append(("Access-Control-Allow-Credentials", "true"))
        if policy.exposed_headers:
            headers.append(("Access-Control-Expose-Headers", ", ".join(policy.exposed_headers)))

    if policy.allow_any_host:
        headers.append(("Access-Control-Allow-Origin", "*"))
    elif host_allowed:
        headers.append(("Access-Control-Allow-Origin", origin))
    return headers
