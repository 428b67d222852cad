import httpx
import pytest

from vidvault.client.network import (
    MiB,
    AdaptiveController,
    NetworkProbe,
    backoff_delay,
    derive_profile,
    retry_base_delay,
)
from vidvault.errors import NetworkUnavailable


@pytest.mark.parametrize(
    ("downlink", "chunk_bytes", "concurrency"),
    [
        (12.0, 10 * MiB, 8),
        (10.0, 10 * MiB, 8),
        (6.0, 5 * MiB, 6),
        (2.5, 2 * MiB, 4),
        (0.5, 1 * MiB, 2),
        (0.4, 512 * 1024, 1),
    ],
)
def test_downlink_tiers(downlink, chunk_bytes, concurrency) -> None:
    profile = derive_profile(downlink_mbps=downlink)
    assert (profile.chunk_bytes, profile.concurrency) == (chunk_bytes, concurrency)


def test_effective_type_drives_concurrency_without_downlink() -> None:
    assert derive_profile(effective_type="3g").concurrency == 3
    assert derive_profile(effective_type="slow-2g").concurrency == 1
    assert derive_profile().concurrency == 4


def test_save_data_caps_profile_regardless_of_speed() -> None:
    profile = derive_profile(downlink_mbps=50.0, save_data=True)
    assert profile.chunk_bytes == 1 * MiB
    assert profile.concurrency == 2


def test_retry_delay_follows_rtt_within_bounds() -> None:
    assert retry_base_delay(None) == 1.0
    assert retry_base_delay(100) == 1.0
    assert retry_base_delay(2500) == 5.0
    assert retry_base_delay(9000) == 10.0


def test_backoff_jitter_stays_within_thirty_percent_and_bounds() -> None:
    assert backoff_delay(1, 2.0, rng=lambda: 0.5) == 4.0
    assert backoff_delay(1, 2.0, rng=lambda: 1.0) == pytest.approx(5.2)
    assert backoff_delay(1, 2.0, rng=lambda: 0.0) == pytest.approx(2.8)
    assert backoff_delay(0, 1.0, rng=lambda: 0.0) == 1.0
    assert backoff_delay(6, 1.0, rng=lambda: 1.0) == 10.0


def test_controller_applies_partial_signals_and_online_state() -> None:
    controller = AdaptiveController(derive_profile(downlink_mbps=12.0, rtt_ms=50))
    seen = []
    controller.add_listener(seen.append)

    slowed = controller.on_network_change(downlink_mbps=0.4)
    assert slowed.concurrency == 1
    assert slowed.rtt_ms == 50

    controller.set_online(False)
    assert not controller.is_online
    assert not controller.wait_until_online(timeout=0.01)
    controller.set_online(True)
    assert controller.wait_until_online(timeout=0.01)
    assert [profile.online for profile in seen] == [True, False, True]


def test_probe_measures_latency_and_bandwidth() -> None:
    payload = b"\x00" * 250_000
    client = httpx.Client(
        transport=httpx.MockTransport(lambda request: httpx.Response(200, content=payload)),
        base_url="http://testserver",
    )
    ticks = iter([0.0, 0.05, 1.05])
    probe = NetworkProbe(client, clock=lambda: next(ticks))

    result = probe.measure()

    assert result.payload_bytes == 250_000
    assert result.latency_ms == 50.0
    assert result.downlink_mbps == 2.0


def test_probe_refresh_updates_controller() -> None:
    client = httpx.Client(
        transport=httpx.MockTransport(lambda request: httpx.Response(200, content=b"\x00" * 1_500_000)),
        base_url="http://testserver",
    )
    ticks = iter([0.0, 0.1, 1.1])
    controller = AdaptiveController()

    profile = NetworkProbe(client, clock=lambda: next(ticks)).refresh(controller)

    assert profile.downlink_mbps == 12.0
    assert profile.concurrency == 8
    assert controller.profile.rtt_ms == 100.0


def test_probe_reports_network_unavailable() -> None:
    def _offline(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("unreachable", request=request)

    client = httpx.Client(transport=httpx.MockTransport(_offline), base_url="http://testserver")
    with pytest.raises(NetworkUnavailable):
        NetworkProbe(client).measure()
