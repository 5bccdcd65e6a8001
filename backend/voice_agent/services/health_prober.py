"""
Health Prober - liveness checks run before any real work.

Probes run concurrently, each with its own bounded timeout. A timeout or
transport error means "unreachable"; it never crashes the probe itself.

Decision rule:
- ToolProvider unreachable        -> critical (pipeline ends)
- Speech API key not configured   -> critical (pipeline ends)
- Speech service unreachable      -> degraded (text-only answer)
- Catalog backend unreachable     -> degraded (logged only)
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

import httpx

from voice_agent.pipeline.request_state import HealthStatus
from voice_agent.services.pipeline_errors import (
    SPEECH_NOT_CONFIGURED_MESSAGE,
    TOOL_PROVIDER_UNAVAILABLE_MESSAGE,
)
from voice_agent.services.speech_client import SpeechClient
from voice_agent.services.tool_provider_client import ToolProviderClient

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 5.0


class HealthProber:
    """
    Concurrent liveness probe for the pipeline's dependencies.

    Usage:
        prober = HealthProber(tool_provider, speech, catalog_url="http://backend:3001")
        status = await prober.probe()
        reason = prober.critical_failure(status)
    """

    def __init__(
        self,
        tool_provider: ToolProviderClient,
        speech: SpeechClient,
        catalog_url: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.tool_provider = tool_provider
        self.speech = speech
        self.catalog_url = catalog_url.rstrip("/") if catalog_url else None
        self.timeout = timeout
        self._transport = transport

    async def _check(self, name: str, probe: Callable[[], Awaitable[bool]]) -> bool:
        try:
            return bool(await asyncio.wait_for(probe(), timeout=self.timeout))
        except asyncio.TimeoutError:
            logger.warning(f"[Health Check] {name} timed out after {self.timeout}s")
        except Exception as e:
            logger.warning(f"[Health Check] {name} not available: {e}")
        return False

    async def _ping_catalog(self) -> bool:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.get(f"{self.catalog_url}/health")
        return response.is_success

    async def probe(self) -> HealthStatus:
        """Run every probe concurrently and join the results."""
        checks = [
            self._check("ToolProvider", lambda: self.tool_provider.ping(self.timeout)),
            self._check("Speech service", lambda: self.speech.ping(self.timeout)),
        ]
        if self.catalog_url:
            checks.append(self._check("Catalog backend", self._ping_catalog))

        results = await asyncio.gather(*checks)

        status = HealthStatus(
            catalog_reachable=results[2] if self.catalog_url else None,
            tool_reachable=results[0],
            speech_configured=self.speech.is_configured,
            speech_reachable=results[1],
        )
        logger.info(f"[Health Check] Status: {status.to_dict()}")
        return status

    @staticmethod
    def critical_failure(status: HealthStatus) -> Optional[str]:
        """Return the user-facing message for a critical failure, or None."""
        if not status.tool_reachable:
            return TOOL_PROVIDER_UNAVAILABLE_MESSAGE
        if not status.speech_configured:
            return SPEECH_NOT_CONFIGURED_MESSAGE
        return None
