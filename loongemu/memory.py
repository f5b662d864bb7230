"""Guest memory arena, bounds-checked accessors and ELF symbol tables."""

from __future__ import annotations

import enum
import struct
import sys
from dataclasses import dataclass

PAGE_SIZE = 4096

_SECTION_HEADER = struct.Struct("<IIQQQQIIQQ")
_SYMBOL = struct.Struct("<IBBHQQ")
_ELF_HEADER_SIZE = 64

SHT_SYMTAB = 2
SHT_DYNSYM = 11
STT_OBJECT = 1
STT_FUNC = 2

_ACCESS_SIZES = (1, 2, 4, 8)


class ExceptionType(enum.IntEnum):
    """Kinds of failure raised by the emulator."""

    ILLEGAL_OPERATION = 0
    PROTECTION_FAULT = 1
    INVALID_PROGRAM = 2
    FEATURE_DISABLED = 3
    OUT_OF_MEMORY = 4
    UNIMPLEMENTED_SYSCALL = 5
    GUEST_ABORT = 6


class MachineError(Exception):
    """An error raised by the emulated machine, with a kind and a data word."""

    def __init__(self, type: ExceptionType, message: str, data: int = 0):
        super().__init__(message)
        self.type = type
        self.message = message
        self.data = data

    def __str__(self) -> str:
        return self.message


@dataclass(frozen=True)
class Symbol:
    """A function or object symbol from an ELF symbol table."""

    address: int
    size: int
    name: str


def _c_string(data: bytes, offset: int) -> bytes:
    end = data.find(b"\0", offset)
    return data[offset:] if end < 0 else data[offset:end]


def _parse_symbol_table(binary: bytes, symtab, strtab, verbose: bool) -> list[Symbol]:
    sym_offset, sym_size = symtab[4], symtab[5]
    str_offset, str_size = strtab[4], strtab[5]
    if sym_offset + sym_size > len(binary) or str_offset + str_size > len(binary):
        if verbose:
            print("Warning: Invalid symbol or string table section", file=sys.stderr)
        return []

    symbols = []
    count = sym_size // _SYMBOL.size
    for name_idx, info, _other, _shndx, value, size in _SYMBOL.iter_unpack(
        binary[sym_offset : sym_offset + count * _SYMBOL.size]
    ):
        if (info & 0xF) not in (STT_FUNC, STT_OBJECT) or value == 0:
            continue
        if name_idx >= str_size:
            continue
        name = _c_string(binary, str_offset + name_idx)
        if name:
            symbols.append(Symbol(value, size, name.decode("utf-8", "surrogateescape")))
    return symbols


def parse_elf_symbols(binary: bytes, verbose: bool = False) -> list[Symbol]:
    """Collect function and object symbols from the static and dynamic tables."""
    binary = bytes(binary)
    if len(binary) < _ELF_HEADER_SIZE:
        if verbose:
            print("Warning: Invalid section header table", file=sys.stderr)
        return []
    (shoff,) = struct.unpack_from("<Q", binary, 0x28)
    (shnum,) = struct.unpack_from("<H", binary, 0x3C)
    if shoff + shnum * _SECTION_HEADER.size > len(binary):
        if verbose:
            print("Warning: Invalid section header table", file=sys.stderr)
        return []

    headers = [
        _SECTION_HEADER.unpack_from(binary, shoff + i * _SECTION_HEADER.size)
        for i in range(shnum)
    ]
    symtab = strtab = dynsym = dynstr = None
    for header in headers:
        kind, link = header[1], header[6]
        if kind == SHT_SYMTAB:
            symtab = header
            if link < shnum:
                strtab = headers[link]
        elif kind == SHT_DYNSYM:
            dynsym = header
            if link < shnum:
                dynstr = headers[link]

    symbols: list[Symbol] = []
    if symtab is not None and strtab is not None:
        symbols += _parse_symbol_table(binary, symtab, strtab, verbose)
    if dynsym is not None and dynstr is not None:
        symbols += _parse_symbol_table(binary, dynsym, dynstr, verbose)
    return symbols


class Memory:
    """A flat guest arena split into read-only and writable regions."""

    def __init__(
        self,
        arena_size: int,
        rodata_start: int = 0,
        data_start: int = 0,
        binary: bytes = b"",
    ):
        self._arena = bytearray()
        self.rodata_start = 0
        self.data_start = 0
        self.symbols: list[Symbol] = []
        self.binary = bytes(binary)

        self.start_address = 0
        self.stack_address = 0
        self.exit_address = 0
        self.heap_address = 0
        self.brk_address = 0
        self.mmap_address = 0

        self.elf_phdr_addr = 0
        self.elf_phentsize = 0
        self.elf_phnum = 0

        self.allocate_custom_arena(arena_size, rodata_start, data_start)
        if self.binary:
            self.load_symbols(self.binary)

    @property
    def arena_size(self) -> int:
        return len(self._arena)

    @property
    def memory_usage(self) -> int:
        return len(self._arena)

    # -- bounds checks -------------------------------------------------

    def _is_writable(self, addr: int, size: int) -> bool:
        return self.data_start <= addr < self.arena_size - size

    def _check_readable(self, addr: int, length: int) -> None:
        if addr < self.rodata_start or addr + length > self.arena_size:
            raise MachineError(
                ExceptionType.PROTECTION_FAULT, "Read from unmapped memory", addr
            )

    def _check_writable(self, addr: int, length: int) -> None:
        if not self._is_writable(addr, length):
            raise MachineError(
                ExceptionType.PROTECTION_FAULT, "Write to read-only memory", addr
            )

    # -- typed access --------------------------------------------------

    def read(self, addr: int, size: int = 8) -> int:
        """Read an unsigned little-endian integer of 1, 2, 4 or 8 bytes."""
        if size not in _ACCESS_SIZES:
            raise ValueError(f"unsupported access size: {size}")
        self._check_readable(addr, size)
        return int.from_bytes(self._arena[addr : addr + size], "little")

    def write(self, addr: int, value: int, size: int = 8) -> None:
        """Write an integer, truncated to 1, 2, 4 or 8 bytes."""
        if size not in _ACCESS_SIZES:
            raise ValueError(f"unsupported access size: {size}")
        self._check_writable(addr, size)
        masked = value & ((1 << (size * 8)) - 1)
        self._arena[addr : addr + size] = masked.to_bytes(size, "little")

    def view(self, addr: int, count: int = 1) -> memoryview:
        """A live view of count bytes of the arena."""
        self._check_readable(addr, count)
        return memoryview(self._arena)[addr : addr + count]

    # -- bulk operations ----------------------------------------------

    def copy_to_guest(self, dest: int, data: bytes) -> None:
        data = bytes(data)
        self._check_writable(dest, len(data))
        self._arena[dest : dest + len(data)] = data

    def copy_from_guest(self, src: int, length: int) -> bytes:
        if src < self.rodata_start or src + length >= self.arena_size:
            raise MachineError(
                ExceptionType.PROTECTION_FAULT, "Read from unmapped memory", src
            )
        return bytes(self._arena[src : src + length])

    def memset(self, addr: int, value: int, length: int) -> None:
        self._check_writable(addr, length)
        self._arena[addr : addr + length] = bytes([value & 0xFF]) * length

    def memcmp(self, addr1: int, addr2: int, length: int) -> int:
        """Compare two guest ranges; returns negative, zero or positive."""
        for addr in (addr1, addr2):
            if addr < self.rodata_start or addr + length >= self.arena_size:
                raise MachineError(
                    ExceptionType.PROTECTION_FAULT, "Read from unmapped memory", addr
                )
        left = self._arena[addr1 : addr1 + length]
        right = self._arena[addr2 : addr2 + length]
        for a, b in zip(left, right):
            if a != b:
                return a - b
        return 0

    def strlen(self, addr: int, maxlen: int = 4096) -> int:
        end = min(addr + maxlen, self.arena_size)
        if end <= addr:
            return 0
        size = end - addr
        data = bytes(self.view(addr, size))
        nul = data.find(b"\0")
        return size if nul < 0 else nul

    def memstring(self, addr: int, maxlen: int = 4096) -> str:
        length = self.strlen(addr, maxlen)
        return bytes(self.view(addr, length)).decode("utf-8", "surrogateescape")

    def copy_into_arena_unsafe(self, dest: int, data: bytes) -> None:
        """Copy into the arena ignoring region protections."""
        data = bytes(data)
        if dest + len(data) >= self.arena_size:
            raise MachineError(
                ExceptionType.PROTECTION_FAULT, "Write to out-of-bounds memory", dest
            )
        self._arena[dest : dest + len(data)] = data

    # -- mapping -------------------------------------------------------

    def mmap_allocate(self, size: int) -> int:
        size = (size + PAGE_SIZE - 1) & ~(PAGE_SIZE - 1)
        result = self.mmap_address
        self.mmap_address += size
        return result

    def mmap_deallocate(self, addr: int, size: int) -> None:
        if addr + size == self.mmap_address:
            self.mmap_address = addr

    def allocate_custom_arena(
        self, size: int, rodata_start: int, data_start: int
    ) -> None:
        if rodata_start >= size or data_start >= size or rodata_start > data_start:
            raise MachineError(
                ExceptionType.INVALID_PROGRAM, "Invalid custom arena boundaries"
            )
        if len(self._arena) != size:
            try:
                self._arena = bytearray(size)
            except MemoryError:
                raise MachineError(
                    ExceptionType.OUT_OF_MEMORY, "Failed to allocate memory arena"
                ) from None
        self.rodata_start = rodata_start
        self.data_start = data_start

    def reset(self) -> None:
        """Zero the whole arena."""
        self._arena = bytearray(len(self._arena))

    # -- symbols -------------------------------------------------------

    def load_symbols(self, binary: bytes, verbose: bool = False) -> None:
        self.symbols.extend(parse_elf_symbols(binary, verbose))

    def address_of(self, name: str) -> int:
        return next((sym.address for sym in self.symbols if sym.name == name), 0)

    def lookup_symbol(self, addr: int) -> Symbol | None:
        """The symbol containing addr, else the nearest one starting below it."""
        best = None
        for sym in self.symbols:
            if sym.address <= addr < sym.address + sym.size:
                return sym
            if sym.address <= addr and (best is None or sym.address > best.address):
                best = sym
        return best