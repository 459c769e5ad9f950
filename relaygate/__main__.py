"""Command-line entry: ``python -m relaygate``."""

from __future__ import annotations

import os

import uvicorn

from relaygate.config.settings import settings
from relaygate.util.logger import attach_uvicorn_loggers

_ENV_NAMES = ("PORT", "ALL_PROXY", "AUTHORIZATION")


def _env_marker(name: str) -> str:
    if os.environ.get(name) or os.environ.get(f"RELAYGATE_{name}"):
        return " ✅"
    return ""


def banner() -> str:
    port_mark, proxy_mark, auth_mark = (_env_marker(name) for name in _ENV_NAMES)
    return (
        f"Access the API server at: http://{settings.host}:{settings.port}/v1/chat/completions\n"
        "\n"
        "Environment Variables:\n"
        f"  - PORT: change the listening port, defaulting to 3040{port_mark}\n"
        f"  - ALL_PROXY: configure the proxy server, supporting HTTP, HTTPS, and SOCKS5 protocols{proxy_mark}\n"
        f"  - AUTHORIZATION: only for internal use to protect the API and will not be sent upstream{auth_mark}\n"
    )


def main() -> None:
    from relaygate.core.gateway import app

    print(banner())
    attach_uvicorn_loggers()
    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_config=None,
        access_log=False,
        timeout_graceful_shutdown=settings.shutdown_grace_seconds,
    )


if __name__ == "__main__":  # pragma: no cover
    main()
