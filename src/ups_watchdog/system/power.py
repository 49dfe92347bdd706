from __future__ import annotations

import os
import subprocess
import sys
from dataclasses import dataclass


@dataclass(frozen=True)
class ShutdownConfig:
    command: list[str]


def default_shutdown_command() -> list[str]:
    if sys.platform == "win32":
        return ["shutdown", "/s", "/f", "/t", "0"]
    return ["/sbin/shutdown", "-h", "now"]


def normalize_shutdown_command(raw: object) -> list[str]:
    """Return the platform halt command if config is missing or invalid."""

    if not isinstance(raw, (list, tuple)) or not raw:
        return default_shutdown_command()
    return [str(x) for x in raw]


def request_shutdown(cfg: ShutdownConfig, reason: str) -> bool:
    """Tell the OS to halt now. No confirmation and no retry.

    Returns True if the command was started.
    """

    env = os.environ.copy()
    env["UPS_WATCHDOG_SHUTDOWN_REASON"] = reason
    try:
        subprocess.Popen(list(cfg.command), env=env)  # noqa: S603,S607
        return True
    except OSError:
        return False


def is_admin() -> bool:
    if hasattr(os, "geteuid"):
        return os.geteuid() == 0
    try:
        import ctypes

        return bool(ctypes.windll.shell32.IsUserAnAdmin())  # type: ignore[attr-defined]
    except Exception:  # pragma: no cover
        return False
