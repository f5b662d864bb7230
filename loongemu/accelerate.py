"""Native implementations of hot string and memory routines.

Guest functions such as ``__memcpy_lsx`` are redirected to system calls in
the 500-511 range, whose handlers do the work directly on guest memory.
"""

from __future__ import annotations

from .machine import REG_A0, REG_A1, REG_A2, Machine
from .memory import Memory

SYS_NATIVE_MEMMOVE = 511
SYS_NATIVE_MEMCMP = 510
SYS_NATIVE_MEMSET = 509
SYS_NATIVE_MEMCPY = 508
SYS_NATIVE_MEMCHR = 507
SYS_NATIVE_STRNCMP = 503
SYS_NATIVE_STRCMP = 502
SYS_NATIVE_STRNLEN = 501
SYS_NATIVE_STRLEN = 500

PATCHED_SYMBOLS: dict[int, tuple[str, ...]] = {
    SYS_NATIVE_MEMCPY: (
        "__memcpy_lsx", "__memcpy_lasx", "__memcpy_aligned", "__memcpy_unaligned",
    ),
    SYS_NATIVE_MEMSET: (
        "__memset_lsx", "__memset_lasx", "__memset_aligned", "__memset_unaligned",
    ),
    SYS_NATIVE_MEMCMP: ("__memcmp_lsx", "__memcmp_lasx", "__memcmp_aligned"),
    SYS_NATIVE_MEMMOVE: (
        "__memmove_lsx", "__memmove_lasx", "__memmove_aligned", "__memmove_unaligned",
    ),
    SYS_NATIVE_MEMCHR: ("__memchr_lsx", "__memchr_lasx", "__memchr_aligned"),
    SYS_NATIVE_STRLEN: ("__strlen_lsx", "__strlen_lasx", "__strlen_aligned"),
    SYS_NATIVE_STRNLEN: ("__strnlen_lsx", "__strnlen_lasx", "__strnlen_aligned"),
    SYS_NATIVE_STRCMP: ("__strcmp_lsx", "__strcmp_lasx", "__strcmp_aligned"),
    SYS_NATIVE_STRNCMP: ("__strncmp_lsx", "__strncmp_lasx", "__strncmp_aligned"),
}


def _args(machine: Machine) -> tuple[int, int, int]:
    regs = machine.registers
    return regs[REG_A0], regs[REG_A1], regs[REG_A2]


def _compare(left: bytes, right: bytes) -> int:
    return next((a - b for a, b in zip(left, right) if a != b), 0)


def _read(memory: Memory, addr: int, length: int) -> bytes:
    return bytes(memory.view(addr, length))


def _memcpy(machine: Machine) -> None:
    dest, src, n = _args(machine)
    memory = machine.memory
    memory.copy_to_guest(dest, _read(memory, src, n))
    machine.set_result(dest)


def _memset(machine: Machine) -> None:
    dest, value, n = _args(machine)
    machine.memory.memset(dest, value & 0xFF, n)
    machine.set_result(dest)


def _memcmp(machine: Machine) -> None:
    ptr1, ptr2, n = _args(machine)
    memory = machine.memory
    machine.set_result(_compare(_read(memory, ptr1, n), _read(memory, ptr2, n)))


def _memchr(machine: Machine) -> None:
    ptr, value, n = _args(machine)
    offset = _read(machine.memory, ptr, n).find(bytes([value & 0xFF]))
    machine.set_result(0 if offset < 0 else ptr + offset)


def _strlen(machine: Machine) -> None:
    machine.set_result(machine.memory.strlen(machine.registers[REG_A0]))


def _strnlen(machine: Machine) -> None:
    addr, maxlen, _ = _args(machine)
    machine.set_result(machine.memory.strlen(addr, maxlen))


def _strcmp(machine: Machine) -> None:
    addr1, addr2, _ = _args(machine)
    memory = machine.memory
    len1 = memory.strlen(addr1)
    len2 = memory.strlen(addr2)
    cmp_len = min(len1, len2)
    s1 = _read(memory, addr1, cmp_len + 1)
    s2 = _read(memory, addr2, cmp_len + 1)
    result = _compare(s1[:cmp_len], s2[:cmp_len])
    if result == 0:
        result = (len1 > len2) - (len1 < len2)
    machine.set_result(result)


def _strncmp(machine: Machine) -> None:
    addr1, addr2, n = _args(machine)
    memory = machine.memory
    machine.set_result(_compare(_read(memory, addr1, n), _read(memory, addr2, n)))


_HANDLERS = {
    SYS_NATIVE_MEMCPY: _memcpy,
    SYS_NATIVE_MEMSET: _memset,
    SYS_NATIVE_MEMCMP: _memcmp,
    SYS_NATIVE_MEMMOVE: _memcpy,  # the source is read whole before writing
    SYS_NATIVE_MEMCHR: _memchr,
    SYS_NATIVE_STRLEN: _strlen,
    SYS_NATIVE_STRNLEN: _strnlen,
    SYS_NATIVE_STRCMP: _strcmp,
    SYS_NATIVE_STRNCMP: _strncmp,
}


def setup_accelerated_syscalls(machine: Machine) -> dict[int, int]:
    """Install the native handlers and find the guest routines they replace.

    Returns a map from the address of each known routine present in the
    symbol table to the system call number that should run in its place.
    """
    for sysnum, handler in _HANDLERS.items():
        machine.install_syscall_handler(sysnum, handler)

    patches: dict[int, int] = {}
    for sysnum, names in PATCHED_SYMBOLS.items():
        for name in names:
            addr = machine.address_of(name)
            if addr != 0:
                patches[addr] = sysnum
    return patches