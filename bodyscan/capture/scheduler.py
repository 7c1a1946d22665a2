from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional, Protocol


logger = logging.getLogger(__name__)

Callback = Callable[[], None]


class CaptureScheduler(Protocol):
    """Owns every timer of a capture session: one repeating tick plus one-shot delays."""

    @property
    def tick_active(self) -> bool: ...

    def schedule_tick(self, interval_s: float, callback: Callback) -> None: ...

    def cancel_tick(self) -> None: ...

    def schedule_delay(self, seconds: float, callback: Callback) -> None: ...

    def cancel_delays(self) -> None: ...

    def cancel_all(self) -> None: ...


class AsyncioScheduler:
    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop
        self._tick: Optional[asyncio.TimerHandle] = None
        self._tick_interval = 0.0
        self._tick_callback: Optional[Callback] = None
        self._delays: set[asyncio.TimerHandle] = set()

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    @property
    def tick_active(self) -> bool:
        return self._tick is not None

    @property
    def pending_delays(self) -> int:
        return len(self._delays)

    def schedule_tick(self, interval_s: float, callback: Callback) -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be > 0")
        # A single tick timer exists at any time.
        self.cancel_tick()
        self._tick_interval = float(interval_s)
        self._tick_callback = callback
        self._tick = self._get_loop().call_later(self._tick_interval, self._fire_tick)

    def _fire_tick(self) -> None:
        callback = self._tick_callback
        if callback is None:
            self._tick = None
            return
        # Re-arm before running so the callback may cancel the tick.
        self._tick = self._get_loop().call_later(self._tick_interval, self._fire_tick)
        try:
            callback()
        except Exception:
            logger.exception("event=tick_callback_failed")

    def cancel_tick(self) -> None:
        if self._tick is not None:
            self._tick.cancel()
        self._tick = None
        self._tick_callback = None

    def schedule_delay(self, seconds: float, callback: Callback) -> None:
        handle: Optional[asyncio.TimerHandle] = None

        def fire() -> None:
            self._delays.discard(handle)  # type: ignore[arg-type]
            try:
                callback()
            except Exception:
                logger.exception("event=delay_callback_failed")

        handle = self._get_loop().call_later(max(0.0, float(seconds)), fire)
        self._delays.add(handle)

    def cancel_delays(self) -> None:
        for handle in list(self._delays):
            handle.cancel()
        self._delays.clear()

    def cancel_all(self) -> None:
        self.cancel_tick()
        self.cancel_delays()
