from __future__ import annotations

import contextlib
import os
import time
from dataclasses import dataclass
from pathlib import Path

from ups_watchdog.status import Condition


class CorruptFlagError(ValueError):
    pass


@dataclass(frozen=True)
class FlagFile:
    """Countdown start time persisted as a bare UNIX timestamp.

    Existence of the file means a countdown is running. The timestamp is only
    ever created, read or deleted; ``reset`` exists solely to recover from a
    corrupt file.
    """

    path: Path

    def read(self) -> int | None:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            raise CorruptFlagError(f"Cannot read flag file {self.path}: {e}") from e
        text = text.strip()
        if not (text.isascii() and text.isdigit()):
            raise CorruptFlagError(f"Flag file {self.path} does not hold a timestamp: {text!r}")
        return int(text)

    def start(self, now: int) -> int:
        """Create the flag if no other run has; return the effective start time."""

        try:
            self._create_exclusive(now)
        except FileExistsError:
            return self._adopt(now)
        return now

    def _adopt(self, now: int) -> int:
        try:
            existing = self.read()
        except CorruptFlagError:
            # The other run created the file but has not written its timestamp yet.
            return now
        if existing is not None:
            return existing
        # Deleted again between our attempt and the read; a third run may win the retry.
        with contextlib.suppress(FileExistsError):
            self._create_exclusive(now)
        return now

    def reset(self, now: int) -> None:
        self.path.write_text(f"{now}\n", encoding="utf-8")

    def clear(self) -> bool:
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        return True

    def _create_exclusive(self, now: int) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = f"{now}\n".encode()
        tmp = self.path.with_name(f".{self.path.name}.{os.getpid()}.tmp")
        tmp.write_bytes(data)
        try:
            # The link appears with its content already in place and fails if the flag exists.
            os.link(tmp, self.path)
        except FileExistsError:
            raise
        except OSError:
            fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
            with os.fdopen(fd, "wb") as f:
                f.write(data)
        finally:
            with contextlib.suppress(FileNotFoundError):
                tmp.unlink()


@dataclass(frozen=True)
class Decision:
    action: str
    started_at: int | None = None
    remaining_seconds: int = 0

    @property
    def pending(self) -> bool:
        return self.action in ("started", "counting", "reset")


def evaluate(
    condition: Condition,
    flag: FlagFile,
    delay_seconds: int,
    now: int | None = None,
) -> Decision:
    """Advance the countdown by one run.

    Creates, keeps or clears the flag file and returns what happened. A
    ``shutdown`` decision leaves the flag in place; the caller clears it right
    before it halts the host.
    """

    now = int(time.time()) if now is None else int(now)

    try:
        started_at = flag.read()
    except CorruptFlagError:
        if condition is Condition.RESTORED:
            flag.clear()
            return Decision(action="discarded")
        flag.reset(now)
        return Decision(action="reset", started_at=now, remaining_seconds=delay_seconds)

    if started_at is None:
        if condition is not Condition.LOW_POWER:
            return Decision(action="idle")
        started_at = flag.start(now)
        remaining = max(0, delay_seconds - (now - started_at))
        return Decision(action="started", started_at=started_at, remaining_seconds=remaining)

    if condition is Condition.RESTORED:
        flag.clear()
        return Decision(action="cancelled", started_at=started_at)

    elapsed = now - started_at
    if condition is Condition.LOW_POWER and elapsed >= delay_seconds:
        return Decision(action="shutdown", started_at=started_at)

    remaining = max(0, delay_seconds - elapsed)
    return Decision(action="counting", started_at=started_at, remaining_seconds=remaining)
