import struct

import pytest

from loongemu.memory import (
    ExceptionType,
    MachineError,
    Memory,
    Symbol,
    parse_elf_symbols,
)

ARENA = 0x10000
RODATA = 0x1000
DATA = 0x2000


@pytest.fixture
def mem():
    return Memory(ARENA, RODATA, DATA)


def _sym(name_idx, info, value, size):
    return struct.pack("<IBBHQQ", name_idx, info, 0, 0, value, size)


def _shdr(kind, offset, size, link=0):
    return struct.pack("<IIQQQQIIQQ", 0, kind, 0, 0, offset, size, link, 0, 0, 0)


def build_elf(symbols, table_kind=2):
    """symbols: list of (name, type, value, size)."""
    strtab = b"\0"
    entries = [_sym(0, 0, 0, 0)]
    for name, kind, value, size in symbols:
        idx = len(strtab)
        strtab += name.encode() + b"\0"
        entries.append(_sym(idx, kind, value, size))
    symtab = b"".join(entries)
    sym_off = 64
    str_off = sym_off + len(symtab)
    sh_off = str_off + len(strtab)
    headers = (
        _shdr(0, 0, 0)
        + _shdr(table_kind, sym_off, len(symtab), link=2)
        + _shdr(3, str_off, len(strtab))
    )
    header = bytearray(64)
    header[0:4] = b"\x7fELF"
    struct.pack_into("<Q", header, 0x28, sh_off)
    struct.pack_into("<H", header, 0x3C, 3)
    return bytes(header) + symtab + strtab + headers


SAMPLE = [
    ("main", 2, 0x1000, 0x20),
    ("table", 1, 0x2000, 8),
    ("untyped", 0, 0x3000, 4),
    ("nowhere", 2, 0, 4),
]


@pytest.mark.parametrize("size", [1, 2, 4, 8])
def test_write_read_round_trip(mem, size):
    value = (1 << (size * 8)) - 3
    mem.write(DATA + 16, value, size)
    assert mem.read(DATA + 16, size) == value


def test_write_truncates_negative(mem):
    mem.write(DATA, -1, 4)
    assert mem.read(DATA, 4) == 0xFFFFFFFF
    assert mem.read(DATA + 4, 4) == 0


def test_read_rejects_odd_size(mem):
    with pytest.raises(ValueError):
        mem.read(DATA, 3)


def test_write_to_rodata_faults(mem):
    with pytest.raises(MachineError) as info:
        mem.write(RODATA, 1, 8)
    assert info.value.type is ExceptionType.PROTECTION_FAULT
    assert info.value.data == RODATA


def test_read_below_rodata_faults(mem):
    with pytest.raises(MachineError) as info:
        mem.read(RODATA - 8, 8)
    assert info.value.type is ExceptionType.PROTECTION_FAULT
    assert str(info.value) == "Read from unmapped memory"


def test_copy_round_trip(mem):
    payload = b"loong payload"
    mem.copy_to_guest(DATA + 100, payload)
    assert mem.copy_from_guest(DATA + 100, len(payload)) == payload


def test_copy_to_guest_rodata_faults(mem):
    with pytest.raises(MachineError) as info:
        mem.copy_to_guest(RODATA + 4, b"abc")
    assert info.value.type is ExceptionType.PROTECTION_FAULT


def test_copy_from_guest_past_end_faults(mem):
    with pytest.raises(MachineError):
        mem.copy_from_guest(ARENA - 4, 4)


def test_memset(mem):
    mem.memset(DATA, 0xAB, 32)
    assert mem.copy_from_guest(DATA, 32) == bytes([0xAB]) * 32


def test_memcmp_orders(mem):
    mem.copy_to_guest(DATA, b"abc")
    mem.copy_to_guest(DATA + 16, b"abd")
    assert mem.memcmp(DATA, DATA + 16, 3) < 0
    assert mem.memcmp(DATA + 16, DATA, 3) > 0
    assert mem.memcmp(DATA, DATA + 16, 2) == 0


def test_memcmp_out_of_range_faults(mem):
    with pytest.raises(MachineError):
        mem.memcmp(0, DATA, 4)


def test_strlen_and_memstring(mem):
    text = "Hello, World!"
    mem.copy_to_guest(DATA, text.encode() + b"\0")
    assert mem.strlen(DATA) == len(text)
    assert mem.strlen(DATA, 5) == 5
    assert mem.memstring(DATA) == text
    assert mem.memstring(DATA, 5) == text[:5]


def test_strlen_at_arena_end(mem):
    assert mem.strlen(ARENA) == 0


def test_view_reflects_contents(mem):
    mem.copy_to_guest(DATA, b"xyz")
    assert bytes(mem.view(DATA, 3)) == b"xyz"


def test_mmap_allocate_pages(mem):
    mem.mmap_address = 0x8000
    first = mem.mmap_allocate(1)
    second = mem.mmap_allocate(4096)
    assert first == 0x8000
    assert second == first + 4096
    assert mem.mmap_address == second + 4096


def test_mmap_deallocate_relaxes_only_last(mem):
    mem.mmap_address = 0x8000
    first = mem.mmap_allocate(4096)
    second = mem.mmap_allocate(4096)
    mem.mmap_deallocate(first, 4096)
    assert mem.mmap_address == second + 4096
    mem.mmap_deallocate(second, 4096)
    assert mem.mmap_address == second


@pytest.mark.parametrize(
    "rodata, data",
    [(ARENA, ARENA), (0x100, ARENA), (0x300, 0x200)],
)
def test_custom_arena_invalid(mem, rodata, data):
    with pytest.raises(MachineError) as info:
        mem.allocate_custom_arena(ARENA, rodata, data)
    assert info.value.type is ExceptionType.INVALID_PROGRAM


def test_custom_arena_resizes(mem):
    mem.allocate_custom_arena(ARENA * 2, 0x100, 0x200)
    assert mem.arena_size == ARENA * 2
    assert mem.rodata_start == 0x100
    assert mem.data_start == 0x200
    mem.write(0x200, 7, 1)
    assert mem.read(0x200, 1) == 7


def test_copy_into_arena_unsafe(mem):
    mem.copy_into_arena_unsafe(RODATA, b"ro")
    assert mem.copy_from_guest(RODATA, 2) == b"ro"
    with pytest.raises(MachineError) as info:
        mem.copy_into_arena_unsafe(ARENA - 2, b"ab")
    assert info.value.data == ARENA - 2


def test_reset_zeroes(mem):
    mem.memset(DATA, 0xFF, 16)
    mem.reset()
    assert mem.copy_from_guest(DATA, 16) == bytes(16)


def test_parse_elf_symbols_filters():
    symbols = parse_elf_symbols(build_elf(SAMPLE))
    assert symbols == [Symbol(0x1000, 0x20, "main"), Symbol(0x2000, 8, "table")]


def test_parse_dynsym_table():
    symbols = parse_elf_symbols(build_elf(SAMPLE, table_kind=11))
    assert [s.name for s in symbols] == ["main", "table"]


def test_truncated_elf_warns(capsys):
    binary = build_elf(SAMPLE)
    assert parse_elf_symbols(binary[:-10], verbose=True) == []
    assert "Invalid section header table" in capsys.readouterr().err


def test_memory_loads_symbols_from_binary():
    mem = Memory(ARENA, RODATA, DATA, build_elf(SAMPLE))
    assert mem.address_of("main") == 0x1000
    assert mem.address_of("table") == 0x2000
    assert mem.address_of("untyped") == 0
    assert mem.address_of("missing") == 0


def test_lookup_symbol(mem):
    mem.load_symbols(build_elf(SAMPLE))
    assert mem.lookup_symbol(0x1010).name == "main"
    assert mem.lookup_symbol(0x2004).name == "table"
    assert mem.lookup_symbol(0x5000).name == "table"
    assert mem.lookup_symbol(0x1500).name == "main"
    assert mem.lookup_symbol(0x10) is None