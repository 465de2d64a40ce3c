"""
davgate.tls
~~~~~~~~~~~
Server-side TLS context for the listener.
"""

from __future__ import annotations

import ssl
from pathlib import Path

from .config import ConfigError


def server_ssl_context(cert: str | Path, key: str | Path) -> ssl.SSLContext:
    for p in (cert, key):
        if not Path(p).is_file():
            raise ConfigError(f"TLS file not found: {p}")
    ctx = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    ctx.minimum_version = ssl.TLSVersion.TLSv1_2
    ctx.load_cert_chain(str(cert), str(key))
    return ctx
