from __future__ import annotations

import abc
import asyncio
import enum
from dataclasses import dataclass
from typing import Any

from ups_watchdog.config import ConfigError, WatchdogConfig, parse_bool
from ups_watchdog.hub import HubClient, HubError

UPSC_TIMEOUT = 10.0


class StatusError(RuntimeError):
    pass


class Condition(enum.Enum):
    LOW_POWER = "low_power"
    RESTORED = "restored"
    OTHER = "other"


@dataclass(frozen=True)
class PowerStatus:
    raw: str
    simulation: bool | None = None

    @property
    def flags(self) -> set[str]:
        return set(self.raw.upper().split())


def effective_condition(status: PowerStatus, ignore_simulation: bool) -> Condition:
    """Classify a NUT ``ups.status`` string.

    A simulated reading counts as restored power when simulations are ignored,
    so it can neither start nor keep a countdown alive.
    """

    if status.simulation and ignore_simulation:
        return Condition.RESTORED
    flags = status.flags
    if {"OB", "LB"} <= flags:
        return Condition.LOW_POWER
    if "OL" in flags:
        return Condition.RESTORED
    return Condition.OTHER


class StatusSource(abc.ABC):
    """Produces the current UPS status for one run."""

    name: str

    @abc.abstractmethod
    async def read(self) -> PowerStatus:
        raise NotImplementedError


class UpscStatusSource(StatusSource):
    """Query a NUT server directly through the ``upsc`` client."""

    name = "upsc"

    def __init__(self, ups_name: str, binary: str = "upsc", timeout: float = UPSC_TIMEOUT):
        self._ups_name = ups_name
        self._binary = binary
        self._timeout = timeout

    async def read(self) -> PowerStatus:
        try:
            proc = await asyncio.create_subprocess_exec(
                self._binary,
                self._ups_name,
                "ups.status",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            raise StatusError(f"Cannot run {self._binary}: {e}") from e

        try:
            out, _ = await asyncio.wait_for(proc.communicate(), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise StatusError(
                f"{self._binary} {self._ups_name} timed out after {self._timeout:g}s"
            ) from e

        raw = out.decode("utf-8", errors="replace").strip()
        if proc.returncode != 0 or not raw:
            raise StatusError(f"Could not get status from UPS server ({self._ups_name})")
        return PowerStatus(raw=raw)


def _extract_status(data: Any) -> str | None:
    if not isinstance(data, dict):
        return None
    ups = data.get("ups")
    if isinstance(ups, dict) and ups.get("status"):
        return str(ups["status"]).strip()
    if data.get("ups.status"):
        return str(data["ups.status"]).strip()
    return None


def _parse_simulation(value: Any) -> bool | None:
    if value is None:
        return None
    try:
        return parse_bool("simulation", value)
    except ConfigError:
        # Unknown markers count as a real reading.
        return None


class HubStatusSource(StatusSource):
    name = "hub"

    def __init__(self, client: HubClient):
        self._client = client

    async def read(self) -> PowerStatus:
        try:
            data = await self._client.fetch_status()
        except HubError as e:
            raise StatusError(str(e)) from e

        raw = _extract_status(data)
        if not raw:
            raise StatusError("Hub status response has no ups.status field")
        return PowerStatus(raw=raw, simulation=_parse_simulation(data.get("simulation")))


def select_source(cfg: WatchdogConfig, client: HubClient | None) -> StatusSource:
    if cfg.status_source == "upsc":
        return UpscStatusSource(cfg.ups_name)
    if client is not None:
        return HubStatusSource(client)
    if cfg.status_source == "hub":
        raise ConfigError("STATUS_SOURCE=hub needs API_SERVER_URI and API_TOKEN")
    return UpscStatusSource(cfg.ups_name)
