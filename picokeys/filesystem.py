"""File system of the card: static file table, dynamic files and metadata."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from .asn1 import format_tlv_len, walk_tlv
from .flash import FlashMemory, FlashStore

log = logging.getLogger(__name__)

EF_PRKDFS = 0x6040
EF_PUKDFS = 0x6041
EF_CDFS = 0x6042
EF_AODFS = 0x6043
EF_DODFS = 0x6044
EF_SKDFS = 0x6045
EF_META = 0xE010
EF_PHY = 0xE020

PHY_VID = 0x0
PHY_PID = 0x2
PHY_LED_GPIO = 0x4
PHY_LED_MODE = 0x5
PHY_OPTS = 0x6
PHY_OPT_WCID = 0x1
PHY_OPT_VPID = 0x2
PHY_OPT_GPIO = 0x4
PHY_OPT_LED = 0x8
PHY_OPT_MASK = PHY_OPT_WCID
PHY_MAX_SIZE = 8

MAX_DEPTH = 4
MAX_DYNAMIC_FILES = 128
DYNAMIC_PARENT = 5
ACL_SIZE = 7


class FileType(enum.IntFlag):
    NOT_KNOWN = 0x00
    WORKING_EF = 0x01
    INTERNAL_EF = 0x02
    DF = 0x04
    BSO = 0x10
    PERSISTENT = 0x20
    DATA_FLASH = 0x40
    DATA_FUNC = 0x80


class EfStructure(enum.IntEnum):
    UNKNOWN = 0x00
    TRANSPARENT = 0x01
    LINEAR_FIXED = 0x02
    LINEAR_FIXED_TLV = 0x03
    LINEAR_VARIABLE = 0x04
    LINEAR_VARIABLE_TLV = 0x05
    CYCLIC = 0x06
    CYCLIC_TLV = 0x07


class AclOp(enum.IntEnum):
    DELETE_SELF = 0x00
    CREATE_DF = 0x01
    CREATE_EF = 0x02
    DELETE_CHILD = 0x03
    WRITE = 0x04
    UPDATE_ERASE = 0x05
    READ_SEARCH = 0x06


class Specify(enum.IntFlag):
    EF = 0x1
    DF = 0x2
    ANY = 0x3


class FileSystemError(Exception):
    """Raised when a file or its metadata cannot be found or changed."""


@dataclass(eq=False)
class File:
    """One file of the card.

    ``parent`` is the index of the parent in the file table.  ``data`` is
    the flash address of the stored length field, or None when the file
    holds nothing.  Files of type ``DATA_FUNC`` report their size through
    ``data_func`` instead.
    """

    fid: int
    parent: int = 0
    name: Optional[bytes] = None
    type: int = FileType.NOT_KNOWN
    ef_structure: int = EfStructure.UNKNOWN
    data: Optional[int] = None
    acl: bytes = bytes(ACL_SIZE)
    data_func: Optional[Callable[["File"], int]] = None


class FileSystem:
    """A file table backed by flash, with dynamic files and a metadata file."""

    def __init__(
        self,
        entries: Sequence[File],
        store: Optional[FlashStore] = None,
        phy: Optional[File] = None,
    ) -> None:
        if not entries:
            raise ValueError("the file table needs at least the master file")
        self.entries: List[File] = list(entries)
        self.store = store if store is not None else FlashStore(FlashMemory())
        self.memory = self.store.memory
        self.phy = phy
        self.dynamic: List[File] = []
        self.current_ef: Optional[File] = None
        self.current_df: Optional[File] = None
        self.selected_applet: Optional[File] = None
        self.card_terminated = False
        self.user_authenticated = False

    @property
    def mf(self) -> File:
        return self.entries[0]

    def is_parent(self, child: File, parent: File) -> bool:
        node = child
        for _ in range(len(self.entries) + 1):
            if node is parent:
                return True
            if node is self.mf:
                return False
            node = self.entries[node.parent]
        return False

    def get_parent(self, file: File) -> File:
        return self.entries[file.parent]

    def search_by_fid(
        self, fid: int, parent: Optional[File] = None, specify: int = 0
    ) -> Optional[File]:
        if self.phy is not None and fid == EF_PHY:
            return self.phy
        for entry in self.entries:
            if entry.fid == 0 or entry.fid != fid:
                continue
            if parent is not None and not self.is_parent(entry, parent):
                continue
            if (
                not specify
                or specify == Specify.ANY
                or (
                    (specify & Specify.EF)
                    and entry.type & (FileType.INTERNAL_EF | FileType.WORKING_EF)
                )
                or ((specify & Specify.DF) and entry.type == FileType.DF)
            ):
                return entry
        return None

    def search_file(self, fid: int) -> Optional[File]:
        found = self.search_by_fid(fid, None, Specify.EF)
        if found is not None:
            return found
        return self.search_dynamic_file(fid)

    def search_by_name(self, name: bytes) -> Optional[File]:
        name = bytes(name)
        for entry in self.entries:
            if entry.name is not None and bytes(entry.name) == name:
                return entry
        return None

    def make_path(self, file: File, top: Optional[File]) -> bytes:
        """File identifiers from below ``top`` down to ``file``, at most MAX_DEPTH."""
        fids = [file.fid]
        node = self.entries[file.parent]
        while len(fids) < MAX_DEPTH and node is not top:
            fids.append(node.fid)
            node = self.entries[node.parent]
        return b"".join((fid & 0xFFFF).to_bytes(2, "big") for fid in reversed(fids))

    def search_by_path(self, path: bytes, parent: Optional[File]) -> Optional[File]:
        path = bytes(path)
        if len(path) > MAX_DEPTH * 2:
            return None
        for entry in self.entries:
            if self.make_path(entry, parent) == path:
                return entry
        return None

    def authenticate_action(self, file: File, op: int) -> bool:
        acl = file.acl[op]
        if acl == 0x00:
            return True
        if acl == 0xFF:
            return False
        if acl == 0x90 or (acl & 0x9F) == 0x10:
            return self.user_authenticated
        return False

    def process_fci(self, file: File, fmd: bool) -> bytes:
        """Build the file control information of ``file``."""
        out = bytearray()
        if fmd:
            out += b"\x6F\x00"
        out += b"\x62\x00"
        if file.type & FileType.DATA_FUNC == FileType.DATA_FUNC and file.data_func is not None:
            size = file.data_func(file)
        else:
            size = self.get_size(file)
        out += bytes([0x81, 2]) + (size & 0xFFFF).to_bytes(2, "big")
        if file.type & FileType.INTERNAL_EF:
            descriptor = 0x08
        elif file.type & FileType.WORKING_EF:
            descriptor = file.ef_structure & 0x7
        elif file.type & FileType.DF:
            descriptor = 0x38
        else:
            descriptor = 0x00
        out += bytes([0x82, 1, descriptor])
        out += bytes([0x83, 2]) + (file.fid & 0xFFFF).to_bytes(2, "big")
        if file.name is not None:
            name = bytes(file.name)[:16]
            out += bytes([0x84, len(name)]) + name
        out += b"\x8A\x01\x05"
        meta = self.meta_find(file.fid)
        if meta:
            out += bytes([0xA5, 0x81, len(meta) & 0xFF]) + meta
        out[1] = (len(out) - 2) & 0xFF
        if fmd:
            out[3] = (len(out) - 4) & 0xFF
        return bytes(out)

    def initialize_flash(self, hard: bool) -> None:
        if hard:
            self.memory.program_block(self.memory.layout.end_data_pool, bytes(8))
            self.memory.mark_available()
        for entry in self.entries:
            if entry.type & FileType.DATA_FLASH == FileType.DATA_FLASH:
                entry.data = None
        self.dynamic.clear()

    def _scan_region(self, persistent: bool) -> None:
        layout = self.memory.layout
        ptr = layout.pointer_size
        if persistent:
            endp, startp = layout.end_rom_pool, layout.start_rom_pool
        else:
            endp, startp = layout.end_data_pool, layout.start_data_pool
        seen = set()
        base = self.memory.read_uintptr(endp)
        while base >= startp and base != 0 and base not in seen:
            seen.add(base)
            fid = self.memory.read_uint16(base + 2 * ptr)
            log.debug("[%x] scan fid %x, len %d", base, fid,
                      self.memory.read_uint16(base + 2 * ptr + 2))
            file = self.search_by_fid(fid, None, Specify.EF)
            if file is None:
                try:
                    file = self.new_file(fid)
                except FileSystemError:
                    file = None
            if file is not None:
                file.data = base + 2 * ptr + 2
            next_base = self.memory.read_uintptr(base)
            if next_base == 0:
                break
            base = next_base

    def scan_flash(self) -> None:
        """Rebuild file data pointers from the flash chains."""
        self.initialize_flash(False)
        layout = self.memory.layout
        r1 = int.from_bytes(self.memory.read(layout.end_rom_pool, 4), "little")
        r2 = int.from_bytes(
            self.memory.read(layout.end_rom_pool + layout.pointer_size, 4), "little"
        )
        blank = (0xFFFFFFFF, 0xEFEFEFEF)
        if r1 in blank and r2 in blank:
            log.info("first initialization (or corrupted flash)")
            empty = bytes(layout.pointer_size * 2 + 4)
            self.memory.program_block(layout.end_data_pool, empty)
            self.memory.program_block(layout.end_rom_pool, empty)
        self._scan_region(True)
        self._scan_region(False)

    def get_data(self, file: Optional[File]) -> Optional[bytes]:
        if file is None or file.data is None:
            return None
        size = self.get_size(file)
        if size == 0:
            return b""
        return self.memory.read(file.data + 2, size)

    def get_size(self, file: Optional[File]) -> int:
        if file is None or file.data is None:
            return 0
        return self.memory.read_uint16(file.data)

    def has_data(self, file: Optional[File]) -> bool:
        return file is not None and file.data is not None and self.get_size(file) > 0

    def put_data(self, file: File, data: bytes) -> None:
        self.store.write_data_to_file(file, data)

    def search_dynamic_file(self, fid: int) -> Optional[File]:
        return next((f for f in self.dynamic if f.fid == fid), None)

    def delete_dynamic_file(self, file: Optional[File]) -> None:
        if file is None:
            raise FileSystemError("no file given")
        for index, entry in enumerate(self.dynamic):
            if entry.fid == file.fid:
                del self.dynamic[index]
                return
        raise FileSystemError(f"no dynamic file {file.fid:04X}")

    def new_file(self, fid: int) -> File:
        """Return the file with ``fid``, creating a dynamic one if needed."""
        found = self.search_file(fid)
        if found is not None:
            return found
        if len(self.dynamic) >= MAX_DYNAMIC_FILES:
            raise FileSystemError("too many dynamic files")
        file = File(
            fid=fid,
            parent=DYNAMIC_PARENT,
            type=FileType.WORKING_EF,
            ef_structure=EfStructure.TRANSPARENT,
        )
        self.dynamic.append(file)
        return file

    def _meta_file(self) -> File:
        ef = self.search_file(EF_META)
        if ef is None:
            raise FileSystemError("no metadata file")
        return ef

    def meta_find(self, fid: int) -> Optional[bytes]:
        """Metadata stored for ``fid``, or None."""
        ef = self.search_file(EF_META)
        if ef is None:
            return None
        for element in walk_tlv(self.get_data(ef) or b""):
            if element.length < 2:
                continue
            value = element.value
            if (value[0] << 8 | value[1]) == fid:
                return value[2:]
        return None

    def meta_delete(self, fid: int) -> None:
        ef = self._meta_file()
        buf = self.get_data(ef) or b""
        for element in walk_tlv(buf):
            if element.length < 2:
                continue
            value = element.value
            if (value[0] << 8 | value[1]) != fid:
                continue
            remaining = buf[:element.offset] + buf[element.end:]
            if not remaining:
                self.store.clear_file(ef)
            else:
                self.put_data(ef, remaining)
            self.memory.mark_available()
            break

    def meta_add(self, fid: int, data: bytes) -> None:
        ef = self._meta_file()
        data = bytes(data)
        buf = self.get_data(ef) or b""
        fid_bytes = (fid & 0xFFFF).to_bytes(2, "big")
        for element in walk_tlv(buf):
            if element.length < 2:
                continue
            value = element.value
            if (value[0] << 8 | value[1]) != fid:
                continue
            if element.length - 2 == len(data):
                start = element.end - element.length
                self.put_data(ef, buf[:start + 2] + data + buf[element.end:])
                return
            moved = bytes([fid & 0xFF]) + format_tlv_len(len(data) + 2) + fid_bytes + data
            self.put_data(ef, buf[:element.offset] + buf[element.end:] + moved)
            return
        added = bytes([fid & 0x1F]) + format_tlv_len(len(data) + 2) + fid_bytes + data
        self.put_data(ef, buf + added)

    def delete_file(self, file: Optional[File]) -> None:
        """Erase a dynamic file together with its metadata."""
        if file is None:
            return
        try:
            self.meta_delete(file.fid)
        except FileSystemError:
            pass
        self.store.clear_file(file)
        self.delete_dynamic_file(file)
        self.memory.mark_available()