"""A sandboxed subset of the Linux system call interface for guest programs."""

from __future__ import annotations

import struct
import time

from .machine import (
    REG_A0,
    REG_A1,
    REG_A2,
    REG_A3,
    REG_A4,
    REG_A5,
    Machine,
)
from .memory import ExceptionType, MachineError

_ENOENT = 2
_EBADF = 9
_EAGAIN = 11
_ENOTTY = 25
_ENOSYS = 38

_UINT64_MAX = (1 << 64) - 1

_SYS_IOCTL = 29
_SYS_FCNTL = 25
_SYS_WRITEV = 66
_SYS_EXIT = 93
_SYS_EXIT_GROUP = 94
_SYS_SET_TID_ADDRESS = 96
_SYS_SET_ROBUST_LIST = 99
_SYS_FUTEX = 98
_SYS_READ = 63
_SYS_WRITE = 64
_SYS_OPENAT = 56
_SYS_CLOSE = 57
_SYS_PPOLL = 73
_SYS_FSTAT = 80
_SYS_GETTIMEOFDAY = 169
_SYS_BRK = 214
_SYS_MMAP = 222
_SYS_MPROTECT = 226
_SYS_PRLIMIT64 = 261
_SYS_READLINKAT = 78
_SYS_GETRANDOM = 278
_SYS_CLOCK_GETTIME = 113
_SYS_GETTID = 178
_SYS_GETPID = 172
_SYS_GETUID = 174
_SYS_GETEUID = 175
_SYS_GETGID = 176
_SYS_GETEGID = 177
_SYS_RT_SIGACTION = 134
_SYS_RT_SIGPROCMASK = 135
_SYS_MADVISE = 233
_SYS_TGKILL = 131
_SYS_PRCTL = 167
_SYS_FSTATAT = 291

_POLLFD = struct.Struct("<ihh")
_TWO_WORDS = struct.Struct("<qq")
_IOVEC_WORD = 8
_MAX_IOV_LEN = 1024 * 1024


def _s32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - (1 << 32) if value >> 31 else value


def _sysprint(machine: Machine, text: str) -> None:
    if machine.options.verbose_syscalls:
        machine.print(text)


def _result32(machine: Machine) -> int:
    return _s32(machine.return_value())


def _arg(machine: Machine, reg: int) -> int:
    return machine.registers[reg]


def _sys_exit(machine: Machine) -> None:
    machine.stop()
    _sysprint(machine, f"exit(status={_result32(machine)})\n")


def _sys_write(machine: Machine) -> None:
    fd = _s32(_arg(machine, REG_A0))
    addr = _arg(machine, REG_A1)
    length = _arg(machine, REG_A2)
    if fd in (1, 2):
        machine.print(bytes(machine.memory.view(addr, length)))
        machine.set_result(length)
    else:
        machine.set_result(-1)
    _sysprint(
        machine,
        f"write(fd={fd}, buf=0x{addr:x}, count={length}) = {_result32(machine)}\n",
    )


def _sys_writev(machine: Machine) -> None:
    fd = _s32(_arg(machine, REG_A0))
    iov_addr = _arg(machine, REG_A1)
    iovcnt = _arg(machine, REG_A2)
    if iovcnt > 1024:
        raise MachineError(
            ExceptionType.ILLEGAL_OPERATION, "iovcnt too large in writev syscall"
        )
    if fd in (1, 2):
        memory = machine.memory
        total = 0
        for entry in range(iovcnt):
            offset = iov_addr + entry * 2 * _IOVEC_WORD
            base = memory.read(offset, _IOVEC_WORD)
            length = memory.read(offset + _IOVEC_WORD, _IOVEC_WORD)
            if 0 < length < _MAX_IOV_LEN:
                machine.print(bytes(memory.view(base, length)))
                total += length
        machine.set_result(total)
    else:
        machine.set_result(-1)
    _sysprint(
        machine,
        f"writev(fd={fd}, iov=0x{iov_addr:x}, iovcnt={iovcnt}) = {_result32(machine)}\n",
    )


def _sys_read(machine: Machine) -> None:
    fd = _s32(_arg(machine, REG_A0))
    machine.set_result(0 if fd == 0 else -_EBADF)
    _sysprint(
        machine,
        f"read(fd={fd}, buf=0x{_arg(machine, REG_A1):x}, "
        f"count={_arg(machine, REG_A2)}) = {_result32(machine)}\n",
    )


def _sys_openat(machine: Machine) -> None:
    machine.set_result(-_ENOENT)


def _is_stdio(fd: int) -> bool:
    return 0 <= fd <= 2


def _sys_close(machine: Machine) -> None:
    fd = _s32(_arg(machine, REG_A0))
    machine.set_result(0 if _is_stdio(fd) else -_EBADF)


def _sys_fstat(machine: Machine) -> None:
    fd = _s32(_arg(machine, REG_A0))
    statbuf = _arg(machine, REG_A1)
    if _is_stdio(fd) and statbuf != 0:
        for addr in range(statbuf, statbuf + 128):
            machine.memory.write(addr, 0, 1)
        machine.set_result(0)
        return
    machine.set_result(-_EBADF)


def _sys_fstatat(machine: Machine) -> None:
    machine.set_result(-_ENOSYS)


def _sys_ioctl(machine: Machine) -> None:
    fd = _s32(_arg(machine, REG_A0))
    machine.set_result(-_ENOTTY if _is_stdio(fd) else -_EBADF)


def _sys_success(machine: Machine) -> None:
    machine.set_result(0)


def _sys_madvise(machine: Machine) -> None:
    addr = _arg(machine, REG_A0)
    length = _arg(machine, REG_A1)
    advice = _s32(_arg(machine, REG_A2))
    machine.set_result(0)
    _sysprint(
        machine,
        f"madvise(addr=0x{addr:x}, len={length}, advice={advice}) = {_result32(machine)}\n",
    )


def _clock_ns(clockid: int) -> int:
    try:
        return time.clock_gettime_ns(clockid)
    except (AttributeError, OSError):
        return time.time_ns()


def _sys_clock_gettime(machine: Machine) -> None:
    clockid = _s32(_arg(machine, REG_A0))
    tp = _arg(machine, REG_A1)
    if tp != 0:
        sec, nsec = divmod(_clock_ns(clockid), 1_000_000_000)
        machine.memory.copy_to_guest(tp, _TWO_WORDS.pack(sec, nsec))
    machine.set_result(0)
    _sysprint(
        machine,
        f"clock_gettime(clockid={clockid}, tp=0x{tp:x}) = {_result32(machine)}\n",
    )


def _sys_gettimeofday(machine: Machine) -> None:
    tv_addr = _arg(machine, REG_A0)
    if tv_addr != 0:
        sec, usec = divmod(time.time_ns() // 1000, 1_000_000)
        machine.memory.copy_to_guest(tv_addr, _TWO_WORDS.pack(sec, usec))
    machine.set_result(0)
    _sysprint(machine, f"gettimeofday(tv=0x{tv_addr:x}) = {_result32(machine)}\n")


def _sys_gettid(machine: Machine) -> None:
    machine.set_result(machine.gettid())
    _sysprint(machine, f"gettid() = {_result32(machine)}\n")


def _sys_getpid(machine: Machine) -> None:
    machine.set_result(1)


def _sys_getuid(machine: Machine) -> None:
    machine.set_result(1000)


def _sys_brk(machine: Machine) -> None:
    # The program break is not emulated; callers fall back to mmap.
    machine.set_result(0)


def _sys_set_tid_address(machine: Machine) -> None:
    machine.clear_tid_address = _arg(machine, REG_A0)
    machine.set_result(machine.gettid())


def _sys_readlinkat(machine: Machine) -> None:
    pathname = machine.memory.memstring(_arg(machine, REG_A1), 256)
    buf_addr = _arg(machine, REG_A2)
    bufsiz = _arg(machine, REG_A3)
    if pathname != "/proc/self/exe":
        machine.set_result(-_ENOENT)
        return
    target = b"/tmp/program"[:bufsiz]
    machine.memory.copy_to_guest(buf_addr, target)
    machine.set_result(len(target))


def _sys_getrandom(machine: Machine) -> None:
    buf_addr = _arg(machine, REG_A0)
    buflen = _arg(machine, REG_A1)
    for offset in range(buflen):
        machine.memory.write(buf_addr + offset, offset * 17 + 31, 1)
    machine.set_result(buflen)


def _rlimit(resource: int) -> tuple[int, int]:
    if resource == 3:  # RLIMIT_STACK
        return 8 * 1024 * 1024, _UINT64_MAX
    if resource == 7:  # RLIMIT_NOFILE
        return 1024, 4096
    return _UINT64_MAX, _UINT64_MAX


def _sys_prlimit64(machine: Machine) -> None:
    resource = _s32(_arg(machine, REG_A1))
    old_limit = _arg(machine, REG_A3)
    if old_limit != 0:
        soft, hard = _rlimit(resource)
        machine.memory.write(old_limit, soft, 8)
        machine.memory.write(old_limit + 8, hard, 8)
    machine.set_result(0)
    _sysprint(
        machine,
        f"prlimit64(pid={_s32(_arg(machine, REG_A0))}, resource={resource}, "
        f"new_limit=0x{_arg(machine, REG_A2):x}, old_limit=0x{old_limit:x}) "
        f"= {_result32(machine)}\n",
    )


def _sys_mmap(machine: Machine) -> None:
    addr = _arg(machine, REG_A0)
    length = _arg(machine, REG_A1)
    prot = _s32(_arg(machine, REG_A2))
    flags = _s32(_arg(machine, REG_A3))
    fd = _s32(_arg(machine, REG_A4))
    offset = _arg(machine, REG_A5)
    if addr == 0:
        machine.set_result(machine.memory.mmap_allocate(length))
    else:
        machine.set_result(-1)
    _sysprint(
        machine,
        f"mmap(addr=0x{addr:x}, len={length}, prot=0x{prot & 0xFFFFFFFF:x}, "
        f"flags=0x{flags & 0xFFFFFFFF:x}, fd={fd}, offset={offset}) "
        f"= 0x{machine.return_value():x}\n",
    )


def _sys_futex(machine: Machine) -> None:
    op = _s32(_arg(machine, REG_A1)) & ~128
    if op == 0:  # FUTEX_WAIT: nothing else could change the value
        machine.set_result(-_EAGAIN)
    elif op == 1:  # FUTEX_WAKE: no other threads to wake
        machine.set_result(0)
    else:
        machine.set_result(-_ENOSYS)


def _sys_tgkill(machine: Machine) -> None:
    tgid = _s32(_arg(machine, REG_A0))
    tid = _s32(_arg(machine, REG_A1))
    sig = _s32(_arg(machine, REG_A2))
    _sysprint(machine, f"tgkill(tgid={tgid}, tid={tid}, sig={sig}) - aborting\n")
    if sig == 6:
        raise MachineError(ExceptionType.GUEST_ABORT, "Program aborted via abort()")
    machine.set_result(-_ENOSYS)


def _sys_prctl(machine: Machine) -> None:
    option = _s32(_arg(machine, REG_A0))
    _sysprint(machine, f"prctl(option={option}, ...) = 0 (stub)\n")
    machine.set_result(0)


def _sys_ppoll(machine: Machine) -> None:
    fds_addr = _arg(machine, REG_A0)
    nfds = _arg(machine, REG_A1)
    if nfds > 1024:
        raise MachineError(
            ExceptionType.ILLEGAL_OPERATION, "nfds too large in ppoll syscall"
        )
    memory = machine.memory
    total = nfds * _POLLFD.size
    if total:
        memory.copy_to_guest(fds_addr, memory.copy_from_guest(fds_addr, total))
        table = memory.view(fds_addr, total)
        for offset in range(0, total, _POLLFD.size):
            fd, events, _revents = _POLLFD.unpack_from(table, offset)
            revents = events if _is_stdio(fd) else 0
            _POLLFD.pack_into(table, offset, fd, events, revents)
    machine.set_result(0)


_HANDLERS = {
    _SYS_EXIT: _sys_exit,
    _SYS_EXIT_GROUP: _sys_exit,
    _SYS_WRITE: _sys_write,
    _SYS_WRITEV: _sys_writev,
    _SYS_READ: _sys_read,
    _SYS_OPENAT: _sys_openat,
    _SYS_CLOSE: _sys_close,
    _SYS_FSTAT: _sys_fstat,
    _SYS_IOCTL: _sys_ioctl,
    _SYS_FCNTL: _sys_success,
    _SYS_READLINKAT: _sys_readlinkat,
    _SYS_FSTATAT: _sys_fstatat,
    _SYS_PPOLL: _sys_ppoll,
    _SYS_BRK: _sys_brk,
    _SYS_MMAP: _sys_mmap,
    _SYS_MPROTECT: _sys_success,
    _SYS_MADVISE: _sys_madvise,
    _SYS_SET_TID_ADDRESS: _sys_set_tid_address,
    _SYS_SET_ROBUST_LIST: _sys_success,
    _SYS_FUTEX: _sys_futex,
    _SYS_GETTID: _sys_gettid,
    _SYS_GETPID: _sys_getpid,
    _SYS_GETUID: _sys_getuid,
    _SYS_GETEUID: _sys_getuid,
    _SYS_GETGID: _sys_getuid,
    _SYS_GETEGID: _sys_getuid,
    _SYS_PRLIMIT64: _sys_prlimit64,
    _SYS_CLOCK_GETTIME: _sys_clock_gettime,
    _SYS_GETTIMEOFDAY: _sys_gettimeofday,
    _SYS_RT_SIGACTION: _sys_success,
    _SYS_RT_SIGPROCMASK: _sys_success,
    _SYS_GETRANDOM: _sys_getrandom,
    _SYS_TGKILL: _sys_tgkill,
    _SYS_PRCTL: _sys_prctl,
}


def setup_linux_syscalls(machine: Machine) -> None:
    """Install the sandboxed Linux system call handlers on machine."""
    for sysnum, handler in _HANDLERS.items():
        machine.install_syscall_handler(sysnum, handler)