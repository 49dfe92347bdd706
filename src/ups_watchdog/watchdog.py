from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import httpx

from ups_watchdog import config
from ups_watchdog.config import ConfigError, WatchdogConfig
from ups_watchdog.countdown import Decision, FlagFile, evaluate
from ups_watchdog.hub import HubClient, HubError, primary_ip
from ups_watchdog.status import (
    Condition,
    PowerStatus,
    StatusError,
    StatusSource,
    effective_condition,
    select_source,
)
from ups_watchdog.system.power import ShutdownConfig, normalize_shutdown_command, request_shutdown

logger = logging.getLogger(__name__)

REPORT_GRACE_SECONDS = 5.0


def report_phase(decision: Decision) -> tuple[str, int]:
    if decision.action == "shutdown":
        return "shutting_down", 0
    if decision.pending:
        return "shutdown_pending", decision.remaining_seconds
    return "online", 0


@dataclass
class PowerWatchdog:
    """One scheduled run: resolve config, read status, advance the countdown."""

    config_path: Path
    source: StatusSource | None = None
    transport: httpx.AsyncBaseTransport | None = None
    clock: Callable[[], float] = time.time
    shutdown: Callable[[ShutdownConfig, str], bool] = request_shutdown
    ip_lookup: Callable[[], str | None] = primary_ip
    retag: Callable[[str], object] | None = None
    report_grace: float = REPORT_GRACE_SECONDS

    async def run(self) -> int:
        try:
            cfg = config.load(self.config_path)
        except ConfigError as e:
            logger.error("CRITICAL ERROR: %s. Exiting.", e)
            return 1

        if self.retag is not None:
            self.retag(cfg.log_tag)

        async with contextlib.AsyncExitStack() as stack:
            client: HubClient | None = None
            ip: str | None = None
            if cfg.hub_enabled:
                client = await stack.enter_async_context(
                    HubClient(cfg.api_server_uri, cfg.api_token, transport=self.transport)
                )
                ip = self.ip_lookup()
                cfg = await self.resolve_config(cfg, client, ip)
            else:
                logger.info("API server not configured. Using local configuration.")
            return await self._step(cfg, client, ip)

    async def resolve_config(
        self, cfg: WatchdogConfig, client: HubClient, ip: str | None
    ) -> WatchdogConfig:
        """Overlay the hub's config on ``cfg`` and cache it; never raises."""

        logger.info("API server is configured. Attempting to fetch remote configuration.")
        if ip is None:
            logger.warning(
                "Could not determine this host's IP address. Falling back to local configuration."
            )
            return cfg

        try:
            payload = await client.fetch_config(ip)
        except HubError as e:
            logger.warning(
                "Failed to connect to API Hub at %s (%s). Falling back to local configuration.",
                cfg.api_server_uri,
                e,
            )
            return cfg

        try:
            remote, cached = config.apply_remote(cfg, payload)
        except ConfigError as e:
            logger.warning("API response was invalid (%s). Falling back to local configuration.", e)
            return cfg

        logger.info(
            "Successfully fetched remote config. Using UPS: '%s', Delay: '%d' minutes.",
            remote.ups_name,
            remote.shutdown_delay_minutes,
        )
        try:
            config.persist(self.config_path, cached)
        except OSError as e:
            logger.warning("Could not update local configuration at %s: %s", self.config_path, e)
        else:
            logger.info("Updated local fallback configuration at %s.", self.config_path)
        return remote

    async def _step(self, cfg: WatchdogConfig, client: HubClient | None, ip: str | None) -> int:
        try:
            source = self.source or select_source(cfg, client)
            status = await source.read()
        except (StatusError, ConfigError) as e:
            logger.error("ERROR: Could not get UPS status: %s. Check connection.", e)
            return 1

        condition = effective_condition(status, cfg.ignore_simulation)
        flag = FlagFile(cfg.flag_file)
        try:
            decision = evaluate(condition, flag, cfg.shutdown_delay_seconds, now=int(self.clock()))
        except OSError as e:
            logger.error("ERROR: Cannot update flag file %s: %s", cfg.flag_file, e)
            return 1
        self._log_decision(cfg, status, condition, decision)

        report = None
        if client is not None:
            report = asyncio.create_task(self._report(client, ip, cfg, decision))
        try:
            if decision.action == "shutdown":
                return self._trigger(cfg, flag)
            return 0
        finally:
            if report is not None:
                await asyncio.wait({report}, timeout=self.report_grace)

    def _trigger(self, cfg: WatchdogConfig, flag: FlagFile) -> int:
        # Flag goes first so one countdown triggers at most once.
        flag.clear()
        command = normalize_shutdown_command(list(cfg.shutdown_command))
        if not self.shutdown(ShutdownConfig(command=command), "ups-low-battery"):
            logger.error("ERROR: Could not start shutdown command: %s", " ".join(command))
            return 1
        return 0

    async def _report(
        self, client: HubClient, ip: str | None, cfg: WatchdogConfig, decision: Decision
    ) -> None:
        phase, remaining = report_phase(decision)
        try:
            await client.report_status(ip, phase, remaining, cfg.shutdown_delay_seconds)
        except HubError as e:
            logger.debug("Status report to hub failed: %s", e)

    def _log_decision(
        self,
        cfg: WatchdogConfig,
        status: PowerStatus,
        condition: Condition,
        decision: Decision,
    ) -> None:
        simulated = bool(status.simulation and cfg.ignore_simulation)
        action = decision.action
        if action == "started":
            logger.warning(
                "Low battery detected! Starting %d minute countdown to system shutdown.",
                cfg.shutdown_delay_minutes,
            )
        elif action == "reset":
            logger.warning(
                "Flag file %s was unreadable. Restarting %d minute countdown.",
                cfg.flag_file,
                cfg.shutdown_delay_minutes,
            )
        elif action == "discarded":
            logger.warning(
                "Flag file %s was unreadable. Power is restored, removing it.", cfg.flag_file
            )
        elif action == "cancelled" and simulated:
            logger.info(
                "Ignoring simulated status '%s'. Cancelling shutdown countdown.", status.raw
            )
        elif action == "cancelled":
            logger.info("Mains power has been restored. Cancelling shutdown countdown.")
        elif action == "shutdown":
            logger.error(
                "Shutdown delay of %d minutes has passed. Shutting down NOW.",
                cfg.shutdown_delay_minutes,
            )
        elif action == "counting" and condition is Condition.LOW_POWER:
            logger.info("Low battery persists. Shutdown in %d seconds.", decision.remaining_seconds)
        elif action == "counting":
            logger.info(
                "UPS status '%s'. Countdown continues, %d seconds remaining.",
                status.raw,
                decision.remaining_seconds,
            )
        elif simulated:
            logger.info("Ignoring simulated status '%s'.", status.raw)
        else:
            logger.debug("UPS status '%s'. No countdown active.", status.raw)
