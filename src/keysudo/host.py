"""Host identity source and origin builder."""

from __future__ import annotations

import socket

DEFAULT_ORIGIN_SCHEME = "pam://"


def resolve_hostname() -> str:
    """Fully qualified host name, falling back to the short name."""
    fqdn = socket.getfqdn()
    if fqdn and fqdn not in {"localhost", "localhost.localdomain"}:
        return fqdn
    return socket.gethostname()


def build_origin(host: str, scheme: str = DEFAULT_ORIGIN_SCHEME) -> str:
    """Origin identifier scoping credentials to `host`."""
    return f"{scheme}{host.strip()}"
