"""The emulated machine: register file, system call table and call setup."""

from __future__ import annotations

import enum
import os
import struct
import sys
from dataclasses import dataclass, field
from typing import Callable

from .memory import ExceptionType, MachineError, Memory, Symbol

MASK64 = (1 << 64) - 1
SYSCALLS_MAX = 512

REG_ZERO = 0
REG_RA = 1
REG_TP = 2
REG_SP = 3
REG_A0 = 4
REG_A1 = 5
REG_A2 = 6
REG_A3 = 7
REG_A4 = 8
REG_A5 = 9
REG_A6 = 10
REG_A7 = 11
REG_T0 = 12
REG_FP = 22

_INT_ARG_REGS = tuple(range(REG_A0, REG_A7 + 1))
_FP_ARG_REGS = tuple(range(8))

AT_NULL = 0
AT_PHDR = 3
AT_PHENT = 4
AT_PHNUM = 5
AT_PAGESZ = 6
AT_BASE = 7
AT_ENTRY = 9
AT_UID = 11
AT_EUID = 12
AT_GID = 13
AT_EGID = 14
AT_HWCAP = 16
AT_CLKTCK = 17
AT_RANDOM = 25

SyscallHandler = Callable[["Machine"], None]


@dataclass
class Registers:
    """General purpose and floating-point registers, condition flags and PC.

    Indexing reads and writes the general purpose registers; register zero
    always reads as zero and ignores writes.
    """

    gpr: list[int] = field(default_factory=lambda: [0] * 32)
    fpr: list[int] = field(default_factory=lambda: [0] * 32)
    fcc: list[int] = field(default_factory=lambda: [0] * 8)
    pc: int = 0

    def __getitem__(self, index: int) -> int:
        return self.gpr[index]

    def __setitem__(self, index: int, value: int) -> None:
        if index != REG_ZERO:
            self.gpr[index] = value & MASK64

    def copy(self) -> Registers:
        return Registers(list(self.gpr), list(self.fpr), list(self.fcc), self.pc)


@dataclass
class MachineOptions:
    """Settings a machine is created with."""

    memory_max: int = 256 << 20
    verbose_loader: bool = False
    verbose_syscalls: bool = False


@dataclass
class _ThreadData:
    tid: int = 1
    clear_tid_address: int = 0
    robust_list: int = 0


def _unimplemented(machine: Machine) -> None:
    sysnum = machine.registers[REG_A7]
    raise MachineError(
        ExceptionType.UNIMPLEMENTED_SYSCALL, "Unimplemented system call", sysnum
    )


class Machine:
    """A guest machine built around a memory arena."""

    def __init__(self, memory: Memory, options: MachineOptions | None = None):
        self.memory = memory
        self.options = options if options is not None else MachineOptions()
        self.registers = Registers()
        self.registers.pc = memory.start_address
        self.registers[REG_SP] = memory.stack_address
        self.instruction_counter = 0
        self.max_instructions = 0
        self._threads = _ThreadData()
        self._syscall_handlers: dict[int, SyscallHandler] = {}

    # -- thread data ---------------------------------------------------

    def gettid(self) -> int:
        return self._threads.tid

    @property
    def clear_tid_address(self) -> int:
        return self._threads.clear_tid_address

    @clear_tid_address.setter
    def clear_tid_address(self, addr: int) -> None:
        self._threads.clear_tid_address = addr & MASK64

    @property
    def robust_list(self) -> int:
        return self._threads.robust_list

    @robust_list.setter
    def robust_list(self, addr: int) -> None:
        self._threads.robust_list = addr & MASK64

    # -- execution state -----------------------------------------------

    def stop(self) -> None:
        self.max_instructions = 0

    def stopped(self) -> bool:
        return self.instruction_counter >= self.max_instructions

    def instruction_limit_reached(self) -> bool:
        return (
            self.instruction_counter >= self.max_instructions
            and self.max_instructions != 0
        )

    # -- system calls --------------------------------------------------

    def install_syscall_handler(self, sysnum: int, handler: SyscallHandler) -> None:
        if not 0 <= sysnum < SYSCALLS_MAX:
            raise ValueError(f"system call number out of range: {sysnum}")
        self._syscall_handlers[sysnum] = handler

    def system_call(self, sysnum: int) -> None:
        """Run the handler installed for sysnum."""
        if not 0 <= sysnum < SYSCALLS_MAX:
            raise MachineError(
                ExceptionType.UNIMPLEMENTED_SYSCALL,
                "Unimplemented system call",
                sysnum,
            )
        self._syscall_handlers.get(sysnum, _unimplemented)(self)

    def set_result(self, value: int) -> None:
        self.registers[REG_A0] = value

    def return_value(self, signed: bool = False) -> int:
        value = self.registers[REG_A0]
        if signed and value >> 63:
            return value - (1 << 64)
        return value

    # -- guest setup ---------------------------------------------------

    def setup_linux(self, args: list[str], env: list[str]) -> None:
        """Lay out argc, argv, envp and the auxiliary vector on the stack."""
        if not args:
            raise MachineError(
                ExceptionType.INVALID_PROGRAM,
                "At least one argument to setup_linux() (program name) is required",
            )
        memory = self.memory
        sp = self.registers[REG_SP] & ~15

        def push_string(text: str) -> int:
            nonlocal sp
            data = text.encode("utf-8", "surrogateescape") + b"\0"
            sp -= len(data)
            memory.copy_to_guest(sp, data)
            return sp

        env_ptrs = [push_string(e) for e in env]
        arg_ptrs = [push_string(a) for a in args]
        sp &= ~15

        sp -= 16
        random_addr = sp
        memory.copy_to_guest(random_addr, os.urandom(16))

        auxv = [
            (AT_BASE, memory.start_address & ~0xFFFFFF),
            (AT_RANDOM, random_addr),
            (AT_CLKTCK, 100),
            (AT_HWCAP, 0),
            (AT_EGID, 1000),
            (AT_GID, 1000),
            (AT_EUID, 1000),
            (AT_UID, 1000),
            (AT_ENTRY, memory.start_address),
            (AT_PAGESZ, 4096),
            (AT_PHNUM, memory.elf_phnum),
            (AT_PHENT, memory.elf_phentsize),
            (AT_PHDR, memory.elf_phdr_addr),
            (AT_NULL, 0),
        ]
        auxv_bytes = b"".join(
            struct.pack("<QQ", key & MASK64, value & MASK64) for key, value in auxv
        )
        sp -= len(auxv_bytes)
        memory.copy_to_guest(sp, auxv_bytes)

        def push_words(words: list[int]) -> None:
            nonlocal sp
            data = b"".join(struct.pack("<Q", w & MASK64) for w in words)
            sp -= len(data)
            if data:
                memory.copy_to_guest(sp, data)

        push_words([0])
        push_words(env_ptrs)
        push_words([0])
        push_words(arg_ptrs)
        push_words([len(args)])

        self.registers[REG_SP] = sp

    def stack_push(self, sp: int, data: bytes) -> int:
        """Copy data below sp, 16-byte aligned; returns the new stack pointer."""
        data = bytes(data)
        aligned = (len(data) + 15) & ~15
        sp -= aligned
        self.memory.copy_to_guest(sp, data)
        return sp

    def prepare_call(self, exit_addr: int, *args) -> None:
        """Set up registers and stack to call a guest function with args.

        Strings are pushed zero-terminated and bytes pushed raw, both passed
        by pointer; integers and enums go in A0-A7, floats in FA0-FA7.
        """
        regs = self.registers
        regs[REG_RA] = exit_addr
        sp = self.memory.stack_address
        int_regs = iter(_INT_ARG_REGS)
        fp_regs = iter(_FP_ARG_REGS)

        def next_reg(regs_iter, kind: str) -> int:
            try:
                return next(regs_iter)
            except StopIteration:
                raise ValueError(f"too many {kind} arguments") from None

        for arg in args:
            if isinstance(arg, str):
                sp = self.stack_push(sp, arg.encode("utf-8", "surrogateescape") + b"\0")
                regs[next_reg(int_regs, "integer")] = sp
            elif isinstance(arg, (bytes, bytearray, memoryview)):
                sp = self.stack_push(sp, bytes(arg))
                regs[next_reg(int_regs, "integer")] = sp
            elif isinstance(arg, enum.Enum):
                if not isinstance(arg.value, int):
                    raise TypeError(f"unsupported enum argument: {arg!r}")
                regs[next_reg(int_regs, "integer")] = arg.value
            elif isinstance(arg, int):
                regs[next_reg(int_regs, "integer")] = arg
            elif isinstance(arg, float):
                (bits,) = struct.unpack("<Q", struct.pack("<d", arg))
                regs.fpr[next_reg(fp_regs, "floating-point")] = bits
            else:
                raise TypeError(
                    f"unsupported argument type for a guest call: {type(arg).__name__}"
                )

        regs[REG_SP] = sp & ~0xF

    # -- symbols and output --------------------------------------------

    def address_of(self, name: str) -> int:
        return self.memory.address_of(name)

    def lookup_symbol(self, addr: int) -> Symbol | None:
        return self.memory.lookup_symbol(addr)

    def print(self, data: bytes | str) -> None:
        """Write guest output to standard output."""
        if isinstance(data, str):
            data = data.encode("utf-8", "surrogateescape")
        stream = sys.stdout
        stream.flush()
        buffer = getattr(stream, "buffer", None)
        if buffer is None:
            stream.write(bytes(data).decode("utf-8", "replace"))
            stream.flush()
        else:
            buffer.write(bytes(data))
            buffer.flush()