from __future__ import annotations

import os
import tempfile
from pathlib import Path

FLAG_FILE_NAME = "ups_shutdown_pending.flag"


def default_config_path() -> Path:
    """Return the local config file used when ``-c`` is not given.

    UPS_WATCHDOG_CONFIG wins, so a cron line can point at a per-host file
    without changing the command.
    """

    env = os.environ.get("UPS_WATCHDOG_CONFIG")
    if env:
        return Path(env)
    return Path("/etc/ups-watchdog/ups.env")


def default_flag_file() -> Path:
    return Path(tempfile.gettempdir()) / FLAG_FILE_NAME
