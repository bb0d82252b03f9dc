"""Flash storage: a page-cached flash image and the linked-block file allocator.

The flash image holds two pools that grow downwards from fixed end
addresses: a persistent pool at the very end of flash and a data pool
below it.  Every stored block has the layout::

    next_addr | prev_addr | fid | len | payload

where the addresses are little-endian pointers of ``pointer_size`` bytes,
``fid`` and ``len`` are little-endian 16-bit values.  The end address of
each pool holds a pointer to the first block of the chain.

Writes never reach the image directly: they are collected in a small
cache of sector-sized pages and applied by :meth:`FlashMemory.flush`
once :meth:`FlashMemory.mark_available` has been called.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Protocol, Union

TOTAL_FLASH_PAGES = 6
PERMANENT_SECTORS = 4
FILE_PERSISTENT = 0x20
SIZE_LOCKED_FID = 0x1000


class FlashError(Exception):
    """Raised when flash memory cannot be programmed or allocated."""


@dataclass(frozen=True)
class FlashLayout:
    """Geometry of the flash image and the addresses of its pools."""

    flash_size: int = 8 * 1024 * 1024
    sector_size: int = 4096
    xip_base: int = 0
    pointer_size: int = 4
    reserved_tail: int = 0
    data_offset: Optional[int] = None

    def __post_init__(self) -> None:
        if self.sector_size <= 0 or self.sector_size & (self.sector_size - 1):
            raise ValueError("sector size must be a power of two")
        if self.flash_size % self.sector_size:
            raise ValueError("flash size must be a whole number of sectors")
        if self.pointer_size not in (4, 8):
            raise ValueError("pointer size must be 4 or 8 bytes")
        if self.start_data_pool >= self.end_data_pool:
            raise ValueError("flash is too small for the data pool")

    @property
    def header_size(self) -> int:
        return self.pointer_size + 4

    @property
    def block_overhead(self) -> int:
        """Bytes a stored block uses besides its payload."""
        return 2 * self.pointer_size + 2 + 2

    @property
    def end_flash(self) -> int:
        return self.xip_base + self.flash_size - self.reserved_tail

    @property
    def end_rom_pool(self) -> int:
        return self.end_flash - self.header_size - 4

    @property
    def start_rom_pool(self) -> int:
        return self.end_rom_pool - PERMANENT_SECTORS * self.sector_size

    @property
    def end_data_pool(self) -> int:
        return self.start_rom_pool - self.header_size

    @property
    def start_data_pool(self) -> int:
        offset = self.flash_size >> 1 if self.data_offset is None else self.data_offset
        return self.xip_base + offset

    @property
    def pointer_mask(self) -> int:
        return (1 << (8 * self.pointer_size)) - 1


@dataclass
class _Page:
    size: int
    address: int = 0
    ready: bool = False
    erase: bool = False
    page_size: int = 0
    data: bytearray = field(default_factory=bytearray)

    def __post_init__(self) -> None:
        if not self.data:
            self.data = bytearray(self.size)

    @property
    def free(self) -> bool:
        return not self.ready and not self.erase


class FlashMemory:
    """A flash image with a write-back cache of sector pages."""

    def __init__(
        self,
        layout: Optional[FlashLayout] = None,
        path: Union[str, Path, None] = None,
        erased_value: int = 0xFF,
    ) -> None:
        self.layout = layout if layout is not None else FlashLayout()
        self.erased_value = erased_value & 0xFF
        self.path = Path(path) if path is not None else None
        size = self.layout.flash_size
        image = bytearray([self.erased_value]) * size
        if self.path is not None:
            if self.path.exists():
                stored = self.path.read_bytes()[:size]
                image = bytearray(stored) + bytearray(size - len(stored))
            else:
                image = bytearray(size)
                self.path.write_bytes(image)
        self._image = image
        self._pages: List[_Page] = [
            _Page(size=self.layout.sector_size) for _ in range(TOTAL_FLASH_PAGES)
        ]
        self._pending = 0
        self._available = False
        self._lock = threading.Lock()

    @property
    def pending(self) -> int:
        """Number of cached pages waiting to be written or erased."""
        return self._pending

    def _index(self, addr: int, length: int = 1) -> int:
        index = addr - self.layout.xip_base
        if index < 0 or index + length > len(self._image):
            raise FlashError(f"address 0x{addr:X} is outside flash")
        return index

    def _aligned(self, addr: int) -> int:
        return addr & ~(self.layout.sector_size - 1)

    def _find_free_page(self, addr: int) -> Optional[_Page]:
        aligned = self._aligned(addr)
        for page in self._pages:
            if not page.free and page.address == aligned:
                return page
        for page in self._pages:
            if page.free:
                start = self._index(aligned, self.layout.sector_size)
                page.data[:] = self._image[start:start + self.layout.sector_size]
                page.address = aligned
                page.ready = True
                self._pending += 1
                return page
        return None

    def _acquire_page(self, addr: int) -> _Page:
        if self._pending == TOTAL_FLASH_PAGES:
            raise FlashError("all flash pages are cached")
        page = self._find_free_page(addr)
        if page is None:
            raise FlashError("no flash page available")
        return page

    def program_block(self, addr: int, data: bytes) -> None:
        """Stage ``data`` to be written at ``addr``."""
        data = bytes(data)
        if not data:
            raise ValueError("nothing to program")
        self._index(addr, len(data))
        sector = self.layout.sector_size
        with self._lock:
            pos = 0
            while pos < len(data):
                current = addr + pos
                offset = current & (sector - 1)
                chunk = data[pos:pos + sector - offset]
                page = self._acquire_page(current)
                page.data[offset:offset + len(chunk)] = chunk
                pos += len(chunk)

    def program_halfword(self, addr: int, value: int) -> None:
        self.program_block(addr, (value & 0xFFFF).to_bytes(2, "little"))

    def program_word(self, addr: int, value: int) -> None:
        self.program_block(addr, (value & 0xFFFFFFFF).to_bytes(4, "little"))

    def program_uintptr(self, addr: int, value: int) -> None:
        size = self.layout.pointer_size
        self.program_block(addr, (value & self.layout.pointer_mask).to_bytes(size, "little"))

    def read(self, addr: int, length: int = 1) -> bytes:
        """Read ``length`` bytes, seeing staged writes before the image."""
        if length < 0:
            raise ValueError("length must not be negative")
        self._index(addr, length)
        sector = self.layout.sector_size
        out = bytearray()
        with self._lock:
            pos = 0
            while pos < length:
                current = addr + pos
                offset = current & (sector - 1)
                count = min(length - pos, sector - offset)
                aligned = self._aligned(current)
                page = next(
                    (p for p in self._pages if p.ready and p.address == aligned), None
                )
                if page is not None:
                    out += page.data[offset:offset + count]
                else:
                    start = self._index(current, count)
                    out += self._image[start:start + count]
                pos += count
        return bytes(out)

    def read_uintptr(self, addr: int) -> int:
        return int.from_bytes(self.read(addr, self.layout.pointer_size), "little")

    def read_uint16(self, addr: int) -> int:
        return int.from_bytes(self.read(addr, 2), "little")

    def read_uint8(self, addr: int) -> int:
        return self.read(addr, 1)[0]

    def erase_page(self, addr: int, page_size: int = 0) -> None:
        """Stage an erase of the sector holding ``addr``.

        A non-zero ``page_size`` erases that many bytes, rounded down to
        whole sectors.
        """
        self._index(addr)
        with self._lock:
            page = self._acquire_page(addr)
            page.erase = True
            page.ready = False
            page.page_size = page_size

    def mark_available(self) -> None:
        """Allow the next :meth:`flush` to write staged pages."""
        with self._lock:
            self._available = True

    def flush(self) -> int:
        """Apply staged pages if allowed; return how many pages were processed."""
        sector = self.layout.sector_size
        done = 0
        with self._lock:
            if self._available and self._pending > 0:
                for page in self._pages:
                    if page.ready:
                        start = self._index(page.address, sector)
                        self._image[start:start + sector] = page.data
                        page.ready = False
                        self._pending -= 1
                        done += 1
                    elif page.erase:
                        size = (page.page_size // sector) * sector if page.page_size else sector
                        start = page.address - self.layout.xip_base
                        end = min(start + size, len(self._image))
                        self._image[start:end] = bytes([self.erased_value]) * (end - start)
                        page.erase = False
                        self._pending -= 1
                        done += 1
                if self.path is not None:
                    self.path.write_bytes(self._image)
            self._available = False
        return done

    def check_blank(self, addr: int, size: int) -> bool:
        """Whether ``size`` bytes from ``addr`` all read as 0xFF."""
        return all(byte == 0xFF for byte in self.read(addr, size))


class StoredFile(Protocol):
    """What the allocator needs of a file: its id, type flags and data address."""

    fid: int
    type: int
    data: Optional[int]


class FlashStore:
    """Allocates, writes and frees file blocks in the flash pools."""

    def __init__(self, memory: FlashMemory) -> None:
        self.memory = memory
        self.layout = memory.layout

    def _link(self, potential: int, next_base: int, base: int) -> int:
        ptr = self.layout.pointer_size
        mem = self.memory
        mem.program_uintptr(potential, next_base)
        if next_base:
            mem.program_uintptr(next_base + ptr, potential)
        mem.program_uintptr(potential + ptr, base)
        mem.program_uintptr(base, potential)
        return potential

    def allocate_free_addr(self, size: int, persistent: bool = False) -> int:
        """Reserve a block for ``size`` payload bytes and return its base address."""
        layout = self.layout
        sector = layout.sector_size
        if size > sector:
            raise FlashError(f"block of {size} bytes exceeds a sector")
        ptr = layout.pointer_size
        mask = layout.pointer_mask
        real_size = size + layout.block_overhead
        if persistent:
            endp, startp = layout.end_rom_pool, layout.start_rom_pool
        else:
            endp, startp = layout.end_data_pool, layout.start_data_pool
        mem = self.memory
        base = endp
        while base >= startp:
            addr_alg = base & ~(sector - 1)
            potential = base - real_size
            next_base = mem.read_uintptr(base)
            if next_base == 0:
                if addr_alg <= potential:
                    return self._link(potential, 0, base)
                if addr_alg - sector >= startp:
                    return self._link(addr_alg - real_size, 0, base)
                raise FlashError("flash pool is full")
            next_end = (
                next_base
                + mem.read_uint16(next_base + 2 * ptr + 2)
                + 2 * 2
                + 2 * ptr
            )
            gap = (base - next_end) & mask
            next_fid = mem.read_uint16(next_base + 2 * ptr)
            if (
                addr_alg <= potential
                and gap > base - potential
                and next_fid & SIZE_LOCKED_FID != SIZE_LOCKED_FID
            ):
                return self._link(potential, next_base, base)
            base = next_base
        raise FlashError("flash pool is full")

    def clear_file(self, file: StoredFile) -> None:
        """Unlink the file's block from its chain and forget its data."""
        if file is None or file.data is None:
            return
        ptr = self.layout.pointer_size
        mem = self.memory
        base = file.data - ptr - 2 - ptr
        prev_addr = mem.read_uintptr(base + ptr)
        next_addr = mem.read_uintptr(base)
        mem.program_uintptr(prev_addr, next_addr)
        mem.program_halfword(file.data, 0)
        if next_addr > 0:
            mem.program_uintptr(next_addr + ptr, prev_addr)
        mem.program_uintptr(base, 0)
        mem.program_uintptr(base + ptr, 0)
        file.data = None

    def write_data_to_file(self, file: StoredFile, data: bytes, offset: int = 0) -> None:
        """Write ``data`` at ``offset`` within the file, moving it if it must grow."""
        if file is None:
            raise ValueError("no file given")
        data = bytes(data)
        mem = self.memory
        length = len(data)
        current_size = mem.read_uint16(file.data) if file.data is not None else 0
        if offset + length > self.layout.sector_size or offset > current_size:
            raise FlashError("file data does not fit")
        if file.data is not None:
            if offset + length <= current_size:
                mem.program_halfword(file.data, offset + length)
                if data:
                    mem.program_block(file.data + 2 + offset, data)
                return
            prefix = mem.read(file.data + 2, offset) if offset > 0 else b""
            self.clear_file(file)
            data = prefix + data
        persistent = (file.type & FILE_PERSISTENT) == FILE_PERSISTENT
        new_addr = self.allocate_free_addr(len(data), persistent)
        ptr = self.layout.pointer_size
        file.data = new_addr + ptr + 2 + ptr
        mem.program_halfword(new_addr + 2 * ptr, file.fid)
        mem.program_halfword(file.data, len(data))
        if data:
            mem.program_block(file.data + 2, data)