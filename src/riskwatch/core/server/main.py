"""RiskWatch server entry point — ``python -m riskwatch.core.server.main``."""

from __future__ import annotations

import logging
from ipaddress import ip_address

from riskwatch.core.config.settings import get_settings
from riskwatch.core.server.app import create_app


def _is_loopback_host(host: str) -> bool:
    if host in {"localhost"}:
        return True
    try:
        return ip_address(host).is_loopback
    except ValueError:
        return False


def run() -> None:
    """Start the RiskWatch MCP server with Streamable HTTP transport."""
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.riskwatch_log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    logger = logging.getLogger(__name__)
    if not settings.riskwatch_allow_insecure_bind and not _is_loopback_host(settings.riskwatch_host):
        raise RuntimeError(
            "Refusing to bind RiskWatch to a non-loopback host without an auth layer. "
            "Set RISKWATCH_ALLOW_INSECURE_BIND=true to override (unsafe)."
        )
    logger.info(
        "Starting RiskWatch server on %s:%d (tz=%s)",
        settings.riskwatch_host,
        settings.riskwatch_port,
        settings.timezone,
    )

    mcp = create_app()
    mcp.run(
        transport="streamable-http",
        host=settings.riskwatch_host,
        port=settings.riskwatch_port,
    )


if __name__ == "__main__":
    run()
