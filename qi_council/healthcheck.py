"""Provider health checks: ping each council agent's API in parallel."""

import asyncio
import logging

from qi_council.providers.base import ProviderAdapter

logger = logging.getLogger(__name__)

_PING_PROMPT = 'Reply with exactly this JSON object and nothing else: {"ok": true}'
_TIMEOUT_SEC = 15.0


async def _check_one(name: str, adapter: ProviderAdapter) -> tuple[str, bool, str]:
    """Ping a single adapter. Returns (name, ok, error_message)."""
    try:
        await asyncio.wait_for(
            adapter.request_json(_PING_PROMPT, system="You are a connectivity check."),
            timeout=_TIMEOUT_SEC,
        )
        return name, True, ""
    except Exception as exc:
        logger.debug("Health check failed for %s: %s", name, exc)
        return name, False, str(exc) or type(exc).__name__


async def run_health_checks(
    adapters: dict[str, ProviderAdapter],
) -> dict[str, tuple[bool, str]]:
    """Ping all adapters in parallel.

    Returns:
        Dict mapping agent id -> (ok, error_message).
        error_message is "" when ok is True.
    """
    results = await asyncio.gather(*(_check_one(n, a) for n, a in adapters.items()))
    return {name: (ok, err) for name, ok, err in results}
