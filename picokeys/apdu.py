"""Command APDU parsing, application selection and response chaining."""

from __future__ import annotations

import enum
from dataclasses import dataclass, replace
from typing import Iterator, List, Optional, Tuple

from .led import BlinkMode, Led

MAX_APPS = 4
CHAIN_BUFFER_SIZE = 4096
CLA_CHAINING = 0x10
INS_SELECT = 0xA4
INS_GET_RESPONSE = 0xC0


class StatusWord(enum.IntEnum):
    """ISO 7816-4 status words used by the command dispatcher."""

    OK = 0x9000
    BYTES_REMAINING = 0x6100
    FILE_NOT_FOUND = 0x6A82
    CLA_NOT_SUPPORTED = 0x6E00
    UNKNOWN = 0x6F00


@dataclass(frozen=True)
class Apdu:
    """A decoded command APDU."""

    cla: int
    ins: int
    p1: int
    p2: int
    data: bytes = b""
    ne: int = 0

    @property
    def nc(self) -> int:
        return len(self.data)

    @property
    def header(self) -> bytes:
        return bytes([self.cla, self.ins, self.p1, self.p2])

    @property
    def is_chained(self) -> bool:
        return bool(self.cla & CLA_CHAINING)


def parse_apdu(buffer: bytes) -> Apdu:
    """Decode a short or extended command APDU."""
    buf = bytes(buffer)
    size = len(buf)
    if size < 4:
        raise ValueError("an APDU needs at least four header bytes")
    cla, ins, p1, p2 = buf[:4]
    data = b""
    if size == 4:
        ne = 256
    elif size == 5:
        ne = buf[4] or 256
    elif buf[4] == 0 and size >= 7:
        if size == 7:
            ne = ((buf[5] << 8) | buf[6]) or 65536
        else:
            nc = (buf[5] << 8) | buf[6]
            if nc > size - 7:
                raise ValueError("APDU data is shorter than its declared length")
            data = buf[7:7 + nc]
            ne = 0
            if nc + 9 == size:
                ne = ((buf[-2] << 8) | buf[-1]) or 65536
    else:
        nc = buf[4]
        if nc > size - 5:
            raise ValueError("APDU data is shorter than its declared length")
        data = buf[5:5 + nc]
        ne = 0
        if nc + 6 == size:
            ne = buf[-1] or 256
    return Apdu(cla=cla, ins=ins, p1=p1, p2=p2, data=data, ne=ne)


class App:
    """A card application; subclasses override the hooks they need."""

    def __init__(self, aid: bytes) -> None:
        self.aid = bytes(aid)
        self.selected = False

    def select(self, force: bool) -> bool:
        """Called when the application is selected; return True on success."""
        self.selected = True
        return self.selected

    def process_apdu(self, apdu: Apdu) -> Tuple[bytes, int]:
        """Handle a command and return the response data and status word."""
        return b"", StatusWord.FILE_NOT_FOUND

    def unload(self) -> None:
        """Called when another application takes over."""
        self.selected = False


class AppRegistry:
    """Registered applications and the one currently selected."""

    def __init__(self, capacity: int = MAX_APPS) -> None:
        self.capacity = capacity
        self._apps: List[App] = []
        self.current: Optional[App] = None

    def __iter__(self) -> Iterator[App]:
        return iter(self._apps)

    def __len__(self) -> int:
        return len(self._apps)

    def register(self, app: App) -> App:
        if len(self._apps) >= self.capacity:
            raise OverflowError(f"at most {self.capacity} applications can be registered")
        self._apps.append(app)
        return app

    def select(self, aid: bytes) -> App:
        """Select the application matching ``aid``; raise LookupError if none does."""
        aid = bytes(aid)
        current = self.current
        if current is not None and current.aid.startswith(aid):
            current.select(False)
            return current
        for app in self._apps:
            common = min(len(aid), len(app.aid))
            if app.aid[:common] != aid[:common]:
                continue
            current = self.current
            if current is not None:
                if current.aid.startswith(aid):
                    current.select(True)
                    return current
                current.unload()
            self.current = app
            if app.select(True):
                return app
        raise LookupError(f"no application with AID {aid.hex().upper()}")


def _sw_bytes(sw: int) -> bytes:
    return bytes([(sw >> 8) & 0xFF, sw & 0xFF])


def _with_status(data: bytes, sw: int) -> Tuple[bytes, int]:
    sw = int(sw)
    if (sw >> 8) != 0x90:
        data = b""
    return bytes(data), sw


class CardProcessor:
    """Dispatches command APDUs and splits long responses with GET RESPONSE."""

    def __init__(
        self,
        registry: Optional[AppRegistry] = None,
        led: Optional[Led] = None,
        pcsc_workaround: bool = False,
    ) -> None:
        self.registry = registry if registry is not None else AppRegistry()
        self.led = led
        self.pcsc_workaround = pcsc_workaround
        self._chain = bytearray()
        self._chaining = False
        self._pending = b""
        self._sw = 0

    def process_apdu(self, apdu: Apdu) -> Tuple[bytes, int]:
        """Run one command and return its response data and status word."""
        if self.led is not None:
            self.led.set_blink(BlinkMode.PROCESSING)
        if apdu.is_chained:
            if not self._chaining:
                self._chain.clear()
            if len(self._chain) + apdu.nc >= CHAIN_BUFFER_SIZE:
                return b"", StatusWord.CLA_NOT_SUPPORTED
            self._chain += apdu.data
            self._chaining = True
            return b"", StatusWord.OK
        if self._chaining:
            apdu = replace(apdu, data=bytes(self._chain) + apdu.data)
            self._chaining = False
        if apdu.ins == INS_SELECT and apdu.p1 == 0x04 and apdu.p2 in (0x00, 0x04):
            try:
                self.registry.select(apdu.data)
            except LookupError:
                return b"", StatusWord.FILE_NOT_FOUND
            return b"", StatusWord.OK
        app = self.registry.current
        if app is None:
            return b"", StatusWord.FILE_NOT_FOUND
        data, sw = app.process_apdu(apdu)
        return _with_status(data, sw)

    def handle(self, buffer: bytes) -> bytes:
        """Process a raw command APDU and return the raw response APDU."""
        apdu = parse_apdu(buffer)
        if apdu.ins == INS_GET_RESPONSE:
            return self._next_chunk(apdu.ne, clear_when_done=True)
        data, sw = self.process_apdu(apdu)
        self._pending = data
        self._sw = sw
        ne = apdu.ne
        if self.pcsc_workaround and (len(data) + 2 + 10) % 64 == 0:
            ne = len(data) - 2
        if sw == 0:
            return b""
        return self._next_chunk(ne, clear_when_done=False)

    def _next_chunk(self, ne: int, clear_when_done: bool) -> bytes:
        remaining = self._pending
        if len(remaining) <= ne:
            out = remaining + _sw_bytes(self._sw)
            if clear_when_done:
                self._pending = b""
                self._sw = 0
            return out
        left = len(remaining) - ne
        self._pending = remaining[ne:]
        return remaining[:ne] + bytes([0x61, 0 if left >= 256 else left])

    def unload(self) -> None:
        """Unload the selected application, leaving none selected."""
        app = self.registry.current
        if app is not None:
            app.unload()
            self.registry.current = None