"""Network-aware chunk sizing, concurrency and retry timing.

Thresholds mirror the browser Network Information API buckets: downlink in
Mbps when it is known, ``effective_type`` otherwise.
"""

import logging
import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

import httpx

from vidvault.client.api import error_from_response
from vidvault.errors import NetworkUnavailable, TransientRequestError

logger = logging.getLogger(__name__)

KiB = 1024
MiB = 1024 * KiB

DEFAULT_CHUNK_BYTES = 5 * MiB
DEFAULT_CONCURRENCY = 4
MAX_CONCURRENCY = 8
SAVE_DATA_MAX_CHUNK_BYTES = 1 * MiB
SAVE_DATA_MAX_CONCURRENCY = 2
MIN_RETRY_DELAY = 1.0
MAX_RETRY_DELAY = 10.0

# (minimum downlink Mbps, chunk bytes, concurrency), fastest first
DOWNLINK_TIERS = (
    (10.0, 10 * MiB, 8),
    (5.0, 5 * MiB, 6),
    (2.0, 2 * MiB, 4),
    (0.5, 1 * MiB, 2),
)
SLOWEST_TIER = (512 * KiB, 1)

EFFECTIVE_TYPE_CONCURRENCY = {"4g": 6, "3g": 3, "2g": 2, "slow-2g": 1}


def retry_base_delay(rtt_ms: float | None) -> float:
    if rtt_ms is None:
        return MIN_RETRY_DELAY
    return max(MIN_RETRY_DELAY, min(MAX_RETRY_DELAY, 2 * rtt_ms / 1000.0))


def backoff_delay(attempt: int, base_delay: float, rng: Callable[[], float] = random.random) -> float:
    """Exponential backoff with +/-30% jitter, clamped to [1s, 10s] per attempt."""
    exponential = base_delay * (2 ** max(0, attempt))
    jitter = exponential * 0.3 * (2 * rng() - 1)
    return max(MIN_RETRY_DELAY, min(MAX_RETRY_DELAY, exponential + jitter))


@dataclass(frozen=True)
class AdaptiveProfile:
    downlink_mbps: float | None
    rtt_ms: float | None
    chunk_bytes: int
    concurrency: int
    save_data: bool = False
    effective_type: str | None = None
    online: bool = True

    @property
    def retry_base_delay(self) -> float:
        return retry_base_delay(self.rtt_ms)


def derive_profile(
    downlink_mbps: float | None = None,
    rtt_ms: float | None = None,
    save_data: bool = False,
    effective_type: str | None = None,
    online: bool = True,
) -> AdaptiveProfile:
    chunk_bytes, concurrency = DEFAULT_CHUNK_BYTES, DEFAULT_CONCURRENCY
    if downlink_mbps is not None:
        chunk_bytes, concurrency = SLOWEST_TIER
        for min_mbps, tier_bytes, tier_concurrency in DOWNLINK_TIERS:
            if downlink_mbps >= min_mbps:
                chunk_bytes, concurrency = tier_bytes, tier_concurrency
                break
    elif effective_type:
        concurrency = EFFECTIVE_TYPE_CONCURRENCY.get(effective_type.lower(), DEFAULT_CONCURRENCY)

    if save_data:
        chunk_bytes = min(chunk_bytes, SAVE_DATA_MAX_CHUNK_BYTES)
        concurrency = min(concurrency, SAVE_DATA_MAX_CONCURRENCY)

    return AdaptiveProfile(
        downlink_mbps=downlink_mbps,
        rtt_ms=rtt_ms,
        chunk_bytes=chunk_bytes,
        concurrency=concurrency,
        save_data=save_data,
        effective_type=effective_type,
        online=online,
    )


_UNSET = object()


class AdaptiveController:
    """Holds the live profile; readers take a snapshot at dispatch time."""

    def __init__(self, profile: AdaptiveProfile | None = None) -> None:
        self._lock = threading.Lock()
        self._profile = profile or derive_profile()
        self._online = threading.Event()
        if self._profile.online:
            self._online.set()
        self._listeners: list[Callable[[AdaptiveProfile], None]] = []

    @property
    def profile(self) -> AdaptiveProfile:
        with self._lock:
            return self._profile

    @property
    def is_online(self) -> bool:
        return self._online.is_set()

    def add_listener(self, listener: Callable[[AdaptiveProfile], None]) -> None:
        with self._lock:
            self._listeners.append(listener)

    def on_network_change(
        self,
        downlink_mbps=_UNSET,
        rtt_ms=_UNSET,
        save_data=_UNSET,
        effective_type=_UNSET,
        online=_UNSET,
    ) -> AdaptiveProfile:
        with self._lock:
            current = self._profile
            profile = derive_profile(
                downlink_mbps=current.downlink_mbps if downlink_mbps is _UNSET else downlink_mbps,
                rtt_ms=current.rtt_ms if rtt_ms is _UNSET else rtt_ms,
                save_data=current.save_data if save_data is _UNSET else save_data,
                effective_type=current.effective_type if effective_type is _UNSET else effective_type,
                online=current.online if online is _UNSET else online,
            )
            self._profile = profile
            listeners = list(self._listeners)

        if profile.online:
            self._online.set()
        else:
            self._online.clear()
        logger.info(
            "network profile changed downlink=%s rtt=%s chunk_bytes=%d concurrency=%d online=%s",
            profile.downlink_mbps,
            profile.rtt_ms,
            profile.chunk_bytes,
            profile.concurrency,
            profile.online,
        )
        for listener in listeners:
            listener(profile)
        return profile

    def set_online(self, online: bool) -> AdaptiveProfile:
        return self.on_network_change(online=online)

    def wait_until_online(self, timeout: float | None = None) -> bool:
        return self._online.wait(timeout)


@dataclass(frozen=True)
class ProbeResult:
    downlink_mbps: float
    latency_ms: float
    payload_bytes: int


class NetworkProbe:
    """Downloads the probe payload and derives latency and bandwidth.

    Latency is the time until response headers arrive; bandwidth is the body
    size in bits over the time spent reading the body.
    """

    def __init__(
        self,
        client: httpx.Client,
        path: str = "/v1/network/probe",
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.client = client
        self.path = path
        self.clock = clock

    def measure(self) -> ProbeResult:
        started = self.clock()
        try:
            with self.client.stream("GET", self.path, headers={"Cache-Control": "no-store"}) as response:
                headers_at = self.clock()
                if response.is_error:
                    response.read()
                    raise error_from_response(response)
                size = sum(len(part) for part in response.iter_bytes())
            finished = self.clock()
        except httpx.TimeoutException as exc:
            raise TransientRequestError(f"network probe timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise NetworkUnavailable(f"network probe failed: {exc}") from exc

        body_seconds = max(finished - headers_at, 1e-6)
        return ProbeResult(
            downlink_mbps=round(size * 8 / body_seconds / 1_000_000, 3),
            latency_ms=round((headers_at - started) * 1000, 2),
            payload_bytes=size,
        )

    def refresh(self, controller: AdaptiveController) -> AdaptiveProfile:
        result = self.measure()
        return controller.on_network_change(downlink_mbps=result.downlink_mbps, rtt_ms=result.latency_ms)
