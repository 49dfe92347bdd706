from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import httpx
import pytest

from ups_watchdog.config import ConfigError, from_values
from ups_watchdog.hub import HubClient
from ups_watchdog.status import (
    Condition,
    HubStatusSource,
    PowerStatus,
    StatusError,
    UpscStatusSource,
    effective_condition,
    select_source,
)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("OB LB", Condition.LOW_POWER),
        ("LB OB DISCHRG", Condition.LOW_POWER),
        ("OL", Condition.RESTORED),
        ("OL CHRG", Condition.RESTORED),
        ("OB DISCHRG", Condition.OTHER),
        ("", Condition.OTHER),
    ],
)
def test_condition_from_nut_flags(raw: str, expected: Condition) -> None:
    assert effective_condition(PowerStatus(raw), ignore_simulation=False) is expected


def test_simulated_low_power_counts_as_restored_when_ignored() -> None:
    status = PowerStatus("OB LB", simulation=True)
    assert effective_condition(status, ignore_simulation=True) is Condition.RESTORED
    assert effective_condition(status, ignore_simulation=False) is Condition.LOW_POWER


def _client(handler) -> HubClient:
    return HubClient("http://hub.test", "tok", transport=httpx.MockTransport(handler))


async def _read_hub(handler) -> PowerStatus:
    async with _client(handler) as client:
        return await HubStatusSource(client).read()


def test_hub_source_reads_nested_status_and_simulation() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"ups": {"status": "OB LB"}, "simulation": True})

    status = asyncio.run(_read_hub(handler))
    assert status == PowerStatus("OB LB", simulation=True)
    assert seen[0].url.path == "/upsc"
    assert seen[0].headers["Authorization"] == "Bearer tok"


def test_hub_source_accepts_flat_status_key() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"ups.status": "OL"})

    assert asyncio.run(_read_hub(handler)) == PowerStatus("OL", simulation=None)


@pytest.mark.parametrize(
    ("marker", "expected"),
    [
        (True, True),
        (False, False),
        ("true", True),
        ("false", False),
        ("0", False),
        ("off", False),
        (1, True),
        ("maybe", None),
    ],
)
def test_hub_simulation_marker_uses_boolean_words(marker: object, expected: bool | None) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"ups": {"status": "OB LB"}, "simulation": marker})

    status = asyncio.run(_read_hub(handler))
    assert status.simulation is expected
    if expected is not True:
        assert effective_condition(status, ignore_simulation=True) is Condition.LOW_POWER


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(200, json={"ups": {}}),
        httpx.Response(200, json=["OL"]),
        httpx.Response(200, text="not json"),
        httpx.Response(503, json={"ups": {"status": "OL"}}),
    ],
)
def test_hub_source_errors_are_fatal(response: httpx.Response) -> None:
    with pytest.raises(StatusError):
        asyncio.run(_read_hub(lambda request: response))


def test_hub_source_transport_error_is_fatal() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    with pytest.raises(StatusError):
        asyncio.run(_read_hub(handler))


def _fake_upsc(tmp_path: Path, body: str) -> str:
    script = tmp_path / "upsc"
    script.write_text(f"#!{sys.executable}\n{body}\n", encoding="utf-8")
    script.chmod(0o755)
    return str(script)


@pytest.mark.skipif(sys.platform == "win32", reason="needs an executable script")
def test_upsc_source_returns_status(tmp_path: Path) -> None:
    binary = _fake_upsc(
        tmp_path, "import sys\nassert sys.argv[1:] == ['ups@nas', 'ups.status']\nprint('OB LB')"
    )
    status = asyncio.run(UpscStatusSource("ups@nas", binary=binary).read())
    assert status == PowerStatus("OB LB")


@pytest.mark.skipif(sys.platform == "win32", reason="needs an executable script")
def test_upsc_source_fails_on_error_exit(tmp_path: Path) -> None:
    binary = _fake_upsc(tmp_path, "import sys\nsys.exit(1)")
    with pytest.raises(StatusError):
        asyncio.run(UpscStatusSource("ups@nas", binary=binary).read())


@pytest.mark.skipif(sys.platform == "win32", reason="needs an executable script")
def test_upsc_source_times_out(tmp_path: Path) -> None:
    binary = _fake_upsc(tmp_path, "import time\ntime.sleep(5)")
    with pytest.raises(StatusError):
        asyncio.run(UpscStatusSource("ups@nas", binary=binary, timeout=0.2).read())


def test_upsc_source_missing_binary(tmp_path: Path) -> None:
    source = UpscStatusSource("ups@nas", binary=str(tmp_path / "no-such-upsc"))
    with pytest.raises(StatusError):
        asyncio.run(source.read())


def test_select_source() -> None:
    hub_cfg = from_values({"API_SERVER_URI": "http://hub", "API_TOKEN": "t"})
    client = HubClient("http://hub", "t")
    try:
        assert isinstance(select_source(hub_cfg, client), HubStatusSource)
        forced = from_values(
            {"API_SERVER_URI": "http://hub", "API_TOKEN": "t", "STATUS_SOURCE": "upsc"}
        )
        assert isinstance(select_source(forced, client), UpscStatusSource)
    finally:
        asyncio.run(client.aclose())

    assert isinstance(select_source(from_values({}), None), UpscStatusSource)
    with pytest.raises(ConfigError):
        select_source(from_values({"STATUS_SOURCE": "hub"}), None)
