from __future__ import annotations

import asyncio
import logging
import time
from http import client as http_client
from typing import Awaitable, Callable, Optional
from urllib import error as urllib_error, request as urllib_request

from preview_deploy.errors import AvailabilityTimeout


logger = logging.getLogger("preview-deploy.availability")

# Returns the HTTP status, or None when no response arrived at all.
Probe = Callable[[str, float], Awaitable[Optional[int]]]


def _fetch_status(url: str, timeout: float) -> Optional[int]:
    try:
        request = urllib_request.Request(
            url,
            headers={"User-Agent": "preview-deploy", "Cache-Control": "no-cache"},
            method="GET",
        )
        with urllib_request.urlopen(request, timeout=timeout) as response:
            return response.status
    except urllib_error.HTTPError as exc:
        return exc.code
    except (urllib_error.URLError, http_client.HTTPException, OSError, ValueError) as exc:
        # malformed URLs and broken responses count as "no response"
        logger.debug("Probe of %s failed: %s", url, exc)
        return None


async def http_probe(url: str, timeout: float) -> Optional[int]:
    return await asyncio.to_thread(_fetch_status, url, timeout)


class AvailabilityPoller:
    """Polls a preview URL until it answers 2xx or the deadline passes."""

    def __init__(
        self,
        probe: Probe = http_probe,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        request_timeout: float = 10,
    ) -> None:
        self._probe = probe
        self._sleep = sleep
        self._clock = clock
        self.request_timeout = request_timeout

    async def wait_until_available(self, url: str, timeout: float, interval: float) -> int:
        """Return the number of probes it took; raise AvailabilityTimeout otherwise."""
        started = self._clock()
        deadline = started + timeout
        probes = 0
        last_status: Optional[int] = None

        while True:
            probes += 1
            remaining = deadline - self._clock()
            last_status = await self._probe(url, max(1.0, min(self.request_timeout, remaining)))
            if last_status is not None and 200 <= last_status < 300:
                logger.info("%s is serving content (status %s, probe %d)", url, last_status, probes)
                return probes

            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            pause = min(interval, remaining)
            logger.info(
                "%s not ready yet (status %s); retrying in %.0fs",
                url,
                last_status if last_status is not None else "no response",
                pause,
            )
            await self._sleep(pause)

        raise AvailabilityTimeout(url, self._clock() - started, last_status)
