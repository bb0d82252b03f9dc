from dataclasses import dataclass
from typing import Optional

import pytest

from picokeys.flash import (
    FILE_PERSISTENT,
    FlashError,
    FlashLayout,
    FlashMemory,
    FlashStore,
)


@dataclass
class FakeFile:
    fid: int
    type: int = 0x01
    data: Optional[int] = None


def small_layout():
    return FlashLayout(flash_size=64 * 1024)


def make_memory(**kwargs):
    return FlashMemory(small_layout(), erased_value=0, **kwargs)


def commit(memory):
    memory.mark_available()
    memory.flush()


def block_base(layout, file):
    return file.data - 2 * layout.pointer_size - 2


def test_layout_pool_ordering():
    layout = small_layout()
    assert layout.start_data_pool < layout.end_data_pool
    assert layout.end_data_pool < layout.start_rom_pool < layout.end_rom_pool
    assert layout.end_rom_pool < layout.end_flash
    assert layout.end_rom_pool - layout.start_rom_pool == 4 * layout.sector_size


def test_layout_rejects_bad_sector():
    with pytest.raises(ValueError):
        FlashLayout(flash_size=64 * 1024, sector_size=3000)


def test_program_and_read_before_flush():
    memory = make_memory()
    memory.program_block(0x8010, b"\x01\x02\x03")
    assert memory.read(0x8010, 3) == b"\x01\x02\x03"
    assert memory.pending == 1


def test_flush_requires_available(tmp_path):
    path = tmp_path / "memory.flash"
    memory = FlashMemory(small_layout(), path=path)
    memory.program_block(0x8000, b"\xAA\xBB")
    assert memory.flush() == 0
    assert path.read_bytes()[0x8000:0x8002] == b"\x00\x00"
    memory.mark_available()
    assert memory.flush() == 1
    assert path.read_bytes()[0x8000:0x8002] == b"\xAA\xBB"
    assert memory.pending == 0


def test_reopen_image_from_file(tmp_path):
    path = tmp_path / "memory.flash"
    memory = FlashMemory(small_layout(), path=path)
    memory.program_block(0x9000, b"persist")
    commit(memory)
    again = FlashMemory(small_layout(), path=path)
    assert again.read(0x9000, 7) == b"persist"


def test_little_endian_reads():
    memory = make_memory()
    memory.program_block(0x8000, b"\x34\x12")
    assert memory.read_uint16(0x8000) == 0x1234
    assert memory.read_uint8(0x8001) == 0x12


def test_uintptr_and_word_round_trip():
    memory = make_memory()
    memory.program_uintptr(0x8100, 0xDEADBEEF)
    memory.program_word(0x8200, 0x01020304)
    memory.program_halfword(0x8300, 0xBEEF)
    commit(memory)
    assert memory.read_uintptr(0x8100) == 0xDEADBEEF
    assert memory.read(0x8200, 4) == b"\x04\x03\x02\x01"
    assert memory.read_uint16(0x8300) == 0xBEEF


def test_program_empty_block_raises():
    memory = make_memory()
    with pytest.raises(ValueError):
        memory.program_block(0x8000, b"")


def test_too_many_cached_pages():
    memory = make_memory()
    sector = memory.layout.sector_size
    for i in range(6):
        memory.program_block(0x8000 + i * sector, b"\x01")
    with pytest.raises(FlashError):
        memory.program_block(0x8000 + 6 * sector, b"\x01")


def test_same_page_reuses_cache():
    memory = make_memory()
    memory.program_block(0x8000, b"\x01")
    memory.program_block(0x8004, b"\x02")
    assert memory.pending == 1
    assert memory.read(0x8000, 5) == b"\x01\x00\x00\x00\x02"


def test_block_across_sectors():
    memory = make_memory()
    sector = memory.layout.sector_size
    addr = 0x8000 + sector - 2
    memory.program_block(addr, b"abcd")
    commit(memory)
    assert memory.read(addr, 4) == b"abcd"


def test_read_outside_flash_raises():
    memory = make_memory()
    with pytest.raises(FlashError):
        memory.read(memory.layout.flash_size, 1)


def test_erase_page():
    memory = make_memory()
    memory.program_block(0x8000, b"\x11\x22")
    commit(memory)
    memory.erase_page(0x8001, 0)
    commit(memory)
    assert memory.read(0x8000, 2) == b"\x00\x00"


def test_check_blank():
    memory = FlashMemory(small_layout())
    assert memory.check_blank(0x8000, 16)
    memory.program_block(0x8004, b"\x00")
    assert not memory.check_blank(0x8000, 16)


def test_write_file_and_read_back():
    memory = make_memory()
    store = FlashStore(memory)
    f = FakeFile(fid=0x1234 & 0x0FFF)
    store.write_data_to_file(f, b"hello")
    commit(memory)
    layout = memory.layout
    assert memory.read_uint16(f.data) == 5
    assert memory.read(f.data + 2, 5) == b"hello"
    assert memory.read_uint16(f.data - 2) == f.fid
    assert layout.start_data_pool <= f.data < layout.end_data_pool


def test_persistent_file_goes_to_rom_pool():
    memory = make_memory()
    store = FlashStore(memory)
    f = FakeFile(fid=0x0101, type=FILE_PERSISTENT | 0x01)
    store.write_data_to_file(f, b"key")
    commit(memory)
    layout = memory.layout
    assert layout.start_rom_pool <= f.data < layout.end_rom_pool


def test_chain_links():
    memory = make_memory()
    layout = memory.layout
    store = FlashStore(memory)
    first = FakeFile(fid=0x0001)
    second = FakeFile(fid=0x0002)
    store.write_data_to_file(first, b"one")
    commit(memory)
    store.write_data_to_file(second, b"two")
    commit(memory)
    base1 = block_base(layout, first)
    base2 = block_base(layout, second)
    assert memory.read_uintptr(layout.end_data_pool) == base1
    assert memory.read_uintptr(base1) == base2
    assert memory.read_uintptr(base2 + layout.pointer_size) == base1
    assert memory.read_uintptr(base2) == 0
    assert base2 < base1


def test_overwrite_in_place_keeps_address():
    memory = make_memory()
    store = FlashStore(memory)
    f = FakeFile(fid=0x0003)
    store.write_data_to_file(f, b"abcdef")
    commit(memory)
    addr = f.data
    store.write_data_to_file(f, b"xy")
    commit(memory)
    assert f.data == addr
    assert memory.read_uint16(f.data) == 2
    assert memory.read(f.data + 2, 2) == b"xy"


def test_growing_with_offset_keeps_prefix():
    memory = make_memory()
    store = FlashStore(memory)
    f = FakeFile(fid=0x0004)
    store.write_data_to_file(f, b"abc")
    commit(memory)
    store.write_data_to_file(f, b"defgh", offset=3)
    commit(memory)
    assert memory.read_uint16(f.data) == 8
    assert memory.read(f.data + 2, 8) == b"abcdefgh"


def test_offset_past_end_raises():
    memory = make_memory()
    store = FlashStore(memory)
    f = FakeFile(fid=0x0005)
    store.write_data_to_file(f, b"ab")
    commit(memory)
    with pytest.raises(FlashError):
        store.write_data_to_file(f, b"c", offset=5)


def test_oversized_write_raises():
    memory = make_memory()
    store = FlashStore(memory)
    with pytest.raises(FlashError):
        store.write_data_to_file(FakeFile(fid=1), bytes(memory.layout.sector_size + 1))
    with pytest.raises(FlashError):
        store.allocate_free_addr(memory.layout.sector_size + 1)


def test_clear_only_file_empties_chain():
    memory = make_memory()
    layout = memory.layout
    store = FlashStore(memory)
    f = FakeFile(fid=0x0006)
    store.write_data_to_file(f, b"bye")
    commit(memory)
    store.clear_file(f)
    commit(memory)
    assert f.data is None
    assert memory.read_uintptr(layout.end_data_pool) == 0


def test_clear_file_without_data_is_noop():
    memory = make_memory()
    store = FlashStore(memory)
    f = FakeFile(fid=0x0007)
    store.clear_file(f)
    assert f.data is None
    assert memory.pending == 0


def test_freed_gap_is_reused():
    memory = make_memory()
    layout = memory.layout
    store = FlashStore(memory)
    a = FakeFile(fid=0x0008)
    b = FakeFile(fid=0x0009)
    store.write_data_to_file(a, bytes(32))
    commit(memory)
    store.write_data_to_file(b, bytes(32))
    commit(memory)
    base_b = block_base(layout, b)
    store.clear_file(a)
    commit(memory)
    assert memory.read_uintptr(layout.end_data_pool) == base_b
    c = FakeFile(fid=0x000A)
    store.write_data_to_file(c, b"small")
    commit(memory)
    base_c = block_base(layout, c)
    assert base_c > base_b
    assert memory.read_uintptr(layout.end_data_pool) == base_c
    assert memory.read_uintptr(base_c) == base_b
    assert memory.read_uintptr(base_b + layout.pointer_size) == base_c


def test_allocation_spills_to_next_sector():
    memory = make_memory()
    layout = memory.layout
    store = FlashStore(memory)
    sector = layout.sector_size
    files = [FakeFile(fid=fid) for fid in (1, 2, 3)]
    for f in files:
        store.write_data_to_file(f, bytes(sector // 2))
        commit(memory)
    bases = [block_base(layout, f) for f in files]
    assert bases == sorted(bases, reverse=True)
    assert all(layout.start_data_pool <= b for b in bases)
    sizes = [memory.read_uint16(f.data) for f in files]
    assert sizes == [sector // 2] * 3