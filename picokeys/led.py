"""Status LED blink patterns and the blinking state machine."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Callable, Optional

LED_OFF_BITS = 14
LED_OFF_SHIFT = 0
LED_OFF_MASK = ((1 << LED_OFF_BITS) - 1) << LED_OFF_SHIFT
LED_ON_BITS = 14
LED_ON_SHIFT = LED_OFF_BITS
LED_ON_MASK = ((1 << LED_ON_BITS) - 1) << LED_ON_SHIFT
LED_COLOR_BITS = 3
LED_COLOR_SHIFT = LED_ON_BITS + LED_OFF_BITS
LED_COLOR_MASK = ((1 << LED_COLOR_BITS) - 1) << LED_COLOR_SHIFT

_U32 = 0xFFFFFFFF


class LedColor(enum.IntEnum):
    OFF = 0
    RED = 1
    GREEN = 2
    BLUE = 3
    YELLOW = 4
    MAGENTA = 5
    CYAN = 6
    WHITE = 7


def _pack(color: LedColor, on_ms: int, off_ms: int) -> int:
    return (color << LED_COLOR_SHIFT) | (on_ms << LED_ON_SHIFT) | (off_ms << LED_OFF_SHIFT)


class BlinkMode(enum.IntEnum):
    NOT_MOUNTED = _pack(LedColor.RED, 250, 250)
    MOUNTED = _pack(LedColor.GREEN, 250, 250)
    SUSPENDED = _pack(LedColor.BLUE, 500, 1000)
    PROCESSING = _pack(LedColor.GREEN, 50, 50)
    BUTTON = _pack(LedColor.YELLOW, 1000, 100)
    ALWAYS_ON = _U32
    ALWAYS_OFF = 0


@dataclass(frozen=True)
class BlinkFields:
    color: LedColor
    on_ms: int
    off_ms: int


def blink_fields(mode: int) -> BlinkFields:
    """Split a packed blink mode into colour and on/off durations."""
    mode = int(mode) & _U32
    return BlinkFields(
        color=LedColor((mode & LED_COLOR_MASK) >> LED_COLOR_SHIFT),
        on_ms=(mode & LED_ON_MASK) >> LED_ON_SHIFT,
        off_ms=(mode & LED_OFF_MASK) >> LED_OFF_SHIFT,
    )


class Led:
    """Drives an LED through a colour callback according to a blink mode."""

    def __init__(
        self,
        driver: Optional[Callable[[LedColor], None]] = None,
        inverted: bool = False,
        mode: int = BlinkMode.NOT_MOUNTED,
    ) -> None:
        self._driver = driver if driver is not None else (lambda color: None)
        self.inverted = inverted
        self.mode = int(mode)
        self._start_ms = 0
        self._lit = False

    def set_blink(self, mode: int) -> None:
        self.mode = int(mode)

    def tick(self, now_ms: int) -> Optional[LedColor]:
        """Advance the blink cycle; return the colour written, if any."""
        fields = blink_fields(self.mode)
        interval = fields.on_ms if self._lit else fields.off_ms
        if ((now_ms - self._start_ms) & _U32) < interval:
            return None
        self._start_ms = (self._start_ms + interval) & _U32
        state = self._lit != self.inverted
        color = fields.color if state else LedColor.OFF
        self._driver(color)
        self._lit = not self._lit
        return color

    def off(self) -> None:
        self._driver(LedColor.OFF)