"""
Playback-side bandwidth estimation.

SpeedProbe never fails; it degrades through three tiers:

1. the configured BandwidthMeter (sampled downloads smoothed with an EWMA,
   or a meter that is simply unavailable)
2. one timed download of a fallback URL, capped at the deadline
3. a uniform random estimate in a plausible range

Each tier is bounded by the same wall-clock deadline. Which meter is real
is decided once from configuration, not probed at call time.
"""

import asyncio
import logging
import random
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

import httpx

from tierstream.config import SpeedProbeConfig
from tierstream.errors import MeasurementUnavailable
from tierstream.events import EventBus, SpeedMeasured

logger = logging.getLogger(__name__)

ZERO_ELAPSED_MBPS = 2.0
CHUNK_SIZE = 65536


class MeasurementMethod(str, Enum):
    MEASURED = "measured"
    SIMULATED = "simulated"
    ESTIMATED = "estimated"


@dataclass
class SpeedMeasurement:
    mbps: float
    method: MeasurementMethod

    def __str__(self) -> str:
        return f"{self.mbps:.2f} Mbps ({self.method.value})"


class BandwidthMeter(ABC):
    """Source of a real bandwidth measurement, in Mbps."""

    @abstractmethod
    async def measure(self) -> float:
        """
        Raises:
            MeasurementUnavailable: no measurement can be made
        """


class UnavailableMeter(BandwidthMeter):
    """Meter for installations without a measurement backend."""

    async def measure(self) -> float:
        raise MeasurementUnavailable("No bandwidth meter configured")


class SampledDownloadMeter(BandwidthMeter):
    """
    Downloads sample URLs and smooths the throughput with an EWMA.

    Usage:
        meter = SampledDownloadMeter(["http://example.com/1M.bin"], sample_count=3)
        mbps = await meter.measure()
    """

    def __init__(
        self,
        urls: list[str],
        sample_count: int = 3,
        alpha: float = 0.3,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not urls:
            raise ValueError("At least one sample URL is required")
        self.urls = urls
        self.sample_count = max(1, sample_count)
        self.alpha = alpha
        self._transport = transport
        self.ewma: Optional[float] = None

    def update(self, bps: float) -> None:
        if self.ewma is None:
            self.ewma = bps
        else:
            self.ewma = self.alpha * bps + (1 - self.alpha) * self.ewma

    async def measure_chunk(self, url: str, client: httpx.AsyncClient) -> float:
        """Download ``url`` once and return its throughput in bits per second."""
        t0 = time.monotonic()
        size = 0
        async with client.stream("GET", url) as response:
            response.raise_for_status()
            async for chunk in response.aiter_bytes(CHUNK_SIZE):
                size += len(chunk)
        dt = max(1e-3, time.monotonic() - t0)
        bps = (size * 8) / dt
        self.update(bps)
        return bps

    async def measure(self) -> float:
        self.ewma = None
        async with httpx.AsyncClient(
            transport=self._transport, follow_redirects=True
        ) as client:
            for i in range(self.sample_count):
                url = self.urls[i % len(self.urls)]
                try:
                    bps = await self.measure_chunk(url, client)
                    logger.debug(f"Sample {i + 1}/{self.sample_count} from {url}: {bps / 1e6:.2f} Mbps")
                except httpx.HTTPError as e:
                    logger.warning(f"Bandwidth sample from {url} failed: {e}")

        if self.ewma is None:
            raise MeasurementUnavailable("All bandwidth samples failed")
        return self.ewma / 1_000_000


def build_meter(
    settings: SpeedProbeConfig,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> BandwidthMeter:
    """Pick the meter implementation named by ``speed_probe.backend``."""
    backend = settings.backend.lower()
    if backend == "sampled":
        return SampledDownloadMeter(
            settings.sample_urls,
            sample_count=settings.sample_count,
            alpha=settings.ewma_alpha,
            transport=transport,
        )
    if backend == "none":
        return UnavailableMeter()
    raise ValueError(f"Unknown speed probe backend: {settings.backend}")


class SpeedProbe:
    """
    Three-tier bandwidth estimate for the playback endpoint.

    Usage:
        probe = SpeedProbe(build_meter(config.speed_probe), config.speed_probe.fallback_url)
        measurement = await probe.measure()
    """

    def __init__(
        self,
        meter: BandwidthMeter,
        fallback_url: str,
        deadline: float = 5.0,
        estimate_range: tuple[float, float] = (1.0, 10.0),
        transport: Optional[httpx.AsyncBaseTransport] = None,
        events: Optional[EventBus] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.meter = meter
        self.fallback_url = fallback_url
        self.deadline = deadline
        self.estimate_range = estimate_range
        self.events = events
        self._transport = transport
        self._rng = rng or random.Random()
        self._clock = clock

    @classmethod
    def from_config(
        cls,
        settings: SpeedProbeConfig,
        events: Optional[EventBus] = None,
    ) -> "SpeedProbe":
        return cls(
            build_meter(settings),
            settings.fallback_url,
            deadline=settings.deadline,
            estimate_range=settings.estimate_range,
            events=events,
        )

    async def measure(self) -> SpeedMeasurement:
        """Best available estimate; never raises for network trouble."""
        logger.info("Measuring connection speed")
        result = await self._measure()
        logger.info(f"Connection speed: {result}")
        if self.events:
            self.events.publish(SpeedMeasured(result.mbps, result.method.value))
        return result

    async def _measure(self) -> SpeedMeasurement:
        # One deadline covers every tier; later tiers only get what is left
        deadline_at = self._clock() + self.deadline

        try:
            mbps = await asyncio.wait_for(self.meter.measure(), timeout=self.deadline)
            return SpeedMeasurement(mbps, MeasurementMethod.MEASURED)
        except MeasurementUnavailable as e:
            logger.info(f"Speed measurement unavailable: {e.message}")
        except asyncio.TimeoutError:
            logger.warning(f"Speed measurement exceeded {self.deadline}s")
        except (httpx.HTTPError, OSError) as e:
            logger.warning(f"Speed measurement failed: {e}")

        remaining = deadline_at - self._clock()
        if remaining > 0:
            try:
                mbps = await self._timed_download(remaining)
                return SpeedMeasurement(mbps, MeasurementMethod.SIMULATED)
            except MeasurementUnavailable as e:
                logger.warning(f"Simulated speed test failed: {e.message}")
            except (httpx.HTTPError, OSError) as e:
                logger.warning(f"Simulated speed test failed: {e}")
        else:
            logger.warning(f"No time left of the {self.deadline}s deadline for a simulated speed test")

        low, high = self.estimate_range
        return SpeedMeasurement(self._rng.uniform(low, high), MeasurementMethod.ESTIMATED)

    async def _timed_download(self, budget: float) -> float:
        """Throughput of one download of the fallback URL, cut off after ``budget`` seconds."""
        received = 0

        async def download() -> None:
            nonlocal received
            async with httpx.AsyncClient(
                transport=self._transport, follow_redirects=True
            ) as client:
                async with client.stream("GET", self.fallback_url) as response:
                    response.raise_for_status()
                    async for chunk in response.aiter_bytes(CHUNK_SIZE):
                        received += len(chunk)

        start = self._clock()
        try:
            await asyncio.wait_for(download(), timeout=budget)
        except asyncio.TimeoutError:
            logger.debug(f"Fallback download capped at {budget:.2f}s")
        elapsed = self._clock() - start

        if received == 0:
            raise MeasurementUnavailable(f"Nothing downloaded from {self.fallback_url}")
        if elapsed <= 0:
            return ZERO_ELAPSED_MBPS
        return received * 8 / elapsed / 1_000_000
