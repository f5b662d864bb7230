"""Thread-related system calls for a single-threaded guest."""

from __future__ import annotations

from .machine import REG_A0, REG_A1, REG_A2, REG_A3, REG_TP, Machine

_ESRCH = 3
_EAGAIN = 11
_EINVAL = 22
_ENOSYS = 38

CLONE_VM = 0x00000100
CLONE_FS = 0x00000200
CLONE_FILES = 0x00000400
CLONE_SIGHAND = 0x00000800
CLONE_THREAD = 0x00010000
CLONE_SYSVSEM = 0x00040000
CLONE_SETTLS = 0x00080000
CLONE_PARENT_SETTID = 0x00100000
CLONE_CHILD_CLEARTID = 0x00200000
CLONE_CHILD_SETTID = 0x01000000

_THREAD_FLAGS = CLONE_VM | CLONE_FS | CLONE_FILES | CLONE_SIGHAND | CLONE_THREAD

_SYS_CLONE = 220
_SYS_CLONE3 = 435
_SYS_EXIT = 93
_SYS_EXIT_GROUP = 94
_SYS_FUTEX = 98
_SYS_SET_TID_ADDRESS = 96
_SYS_GETTID = 178
_SYS_TGKILL = 131
_SYS_TKILL = 130

_CLONE3_ARGS_SIZE = 64
_CLONE3_TLS_OFFSET = 56

_FUTEX_WAIT = 0
_FUTEX_WAKE = 1
_FUTEX_REQUEUE = 3
_FUTEX_CMP_REQUEUE = 4
_FUTEX_WAKE_OP = 5
_FUTEX_WAIT_BITSET = 9
_FUTEX_WAKE_BITSET = 10
_FUTEX_PRIVATE_FLAG = 128


def _s32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - (1 << 32) if value >> 31 else value


def _finish_clone(machine: Machine, flags: int, tls: int) -> None:
    if flags & _THREAD_FLAGS == _THREAD_FLAGS:
        # New threads cannot be created in a single-threaded machine.
        machine.set_result(-_EAGAIN)
        return
    if flags & CLONE_SETTLS:
        machine.registers[REG_TP] = tls
    machine.set_result(-_ENOSYS)


def _sys_clone(machine: Machine) -> None:
    regs = machine.registers
    _finish_clone(machine, regs[REG_A0], regs[REG_A3])


def _sys_clone3(machine: Machine) -> None:
    args_addr = machine.registers[REG_A0]
    size = machine.registers[REG_A1]
    if size < _CLONE3_ARGS_SIZE:
        machine.set_result(-_EINVAL)
        return
    flags = machine.memory.read(args_addr, 8)
    tls = machine.memory.read(args_addr + _CLONE3_TLS_OFFSET, 8)
    _finish_clone(machine, flags, tls)


def _sys_set_tid_address(machine: Machine) -> None:
    machine.clear_tid_address = machine.registers[REG_A0]
    machine.set_result(machine.gettid())


def _sys_gettid(machine: Machine) -> None:
    machine.set_result(machine.gettid())


def _sys_exit(machine: Machine) -> None:
    clear_addr = machine.clear_tid_address
    if clear_addr != 0:
        machine.memory.write(clear_addr, 0, 4)
    machine.stop()


def _sys_futex(machine: Machine) -> None:
    regs = machine.registers
    uaddr = regs[REG_A0]
    op = _s32(regs[REG_A1]) & ~_FUTEX_PRIVATE_FLAG
    if op in (_FUTEX_WAIT, _FUTEX_WAIT_BITSET):
        # The word is still read so that a bad address faults; either way
        # nothing could ever wake the waiter, so report a changed value.
        machine.memory.read(uaddr, 4)
        machine.set_result(-_EAGAIN)
    elif op in (
        _FUTEX_WAKE,
        _FUTEX_WAKE_BITSET,
        _FUTEX_REQUEUE,
        _FUTEX_CMP_REQUEUE,
        _FUTEX_WAKE_OP,
    ):
        machine.set_result(0)
    else:
        machine.set_result(-_ENOSYS)


def _signal_thread(machine: Machine, tid: int) -> None:
    machine.set_result(0 if tid == machine.gettid() else -_ESRCH)


def _sys_tgkill(machine: Machine) -> None:
    _signal_thread(machine, _s32(machine.registers[REG_A1]))


def _sys_tkill(machine: Machine) -> None:
    _signal_thread(machine, _s32(machine.registers[REG_A0]))


_HANDLERS = {
    _SYS_CLONE: _sys_clone,
    _SYS_CLONE3: _sys_clone3,
    _SYS_SET_TID_ADDRESS: _sys_set_tid_address,
    _SYS_GETTID: _sys_gettid,
    _SYS_FUTEX: _sys_futex,
    _SYS_EXIT: _sys_exit,
    _SYS_EXIT_GROUP: _sys_exit,
    _SYS_TGKILL: _sys_tgkill,
    _SYS_TKILL: _sys_tkill,
}


def setup_posix_threads(machine: Machine) -> None:
    """Install thread creation, identification and futex handlers on machine."""
    for sysnum, handler in _HANDLERS.items():
        machine.install_syscall_handler(sysnum, handler)