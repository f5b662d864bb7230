import pytest

from loongemu.machine import REG_A0, REG_A1, REG_A2, REG_A3, REG_TP, Machine
from loongemu.memory import ExceptionType, MachineError, Memory
from loongemu.threads import (
    CLONE_FILES,
    CLONE_FS,
    CLONE_SETTLS,
    CLONE_SIGHAND,
    CLONE_THREAD,
    CLONE_VM,
    setup_posix_threads,
)

THREAD_FLAGS = CLONE_VM | CLONE_FS | CLONE_FILES | CLONE_SIGHAND | CLONE_THREAD
DATA = 0x3000


@pytest.fixture
def machine():
    m = Machine(Memory(0x10000, 0x1000, 0x2000))
    setup_posix_threads(m)
    return m


def call(machine, sysnum, *args):
    for reg, value in zip((REG_A0, REG_A1, REG_A2, REG_A3), args):
        machine.registers[reg] = value
    machine.system_call(sysnum)
    return machine.return_value(signed=True)


def test_clone_thread_is_refused(machine):
    assert call(machine, 220, THREAD_FLAGS | CLONE_SETTLS, 0, 0, 0x4000) == -11
    assert machine.registers[REG_TP] == 0


def test_clone_sets_tls_and_reports_enosys(machine):
    assert call(machine, 220, CLONE_SETTLS, 0, 0, 0x4000) == -38
    assert machine.registers[REG_TP] == 0x4000


def test_clone_without_settls_keeps_tp(machine):
    machine.registers[REG_TP] = 0x1234
    assert call(machine, 220, 0, 0, 0, 0x4000) == -38
    assert machine.registers[REG_TP] == 0x1234


def test_clone3_rejects_short_struct(machine):
    assert call(machine, 435, DATA, 63) == -22


def test_clone3_reads_flags_and_tls(machine):
    machine.memory.write(DATA, CLONE_SETTLS, 8)
    machine.memory.write(DATA + 56, 0x5000, 8)
    assert call(machine, 435, DATA, 64) == -38
    assert machine.registers[REG_TP] == 0x5000


def test_clone3_thread_is_refused(machine):
    machine.memory.write(DATA, THREAD_FLAGS, 8)
    assert call(machine, 435, DATA, 88) == -11


def test_set_tid_address_and_gettid(machine):
    assert call(machine, 96, DATA) == machine.gettid()
    assert machine.clear_tid_address == DATA
    assert call(machine, 178) == 1


def test_exit_clears_tid_word_and_stops(machine):
    machine.max_instructions = 100
    machine.memory.write(DATA, 0xDEADBEEF, 4)
    machine.memory.write(DATA + 4, 0xCAFE, 4)
    call(machine, 96, DATA)
    assert not machine.stopped()
    call(machine, 94)
    assert machine.memory.read(DATA, 4) == 0
    assert machine.memory.read(DATA + 4, 4) == 0xCAFE
    assert machine.stopped()


def test_futex_wait_reports_eagain(machine):
    machine.memory.write(DATA, 7, 4)
    assert call(machine, 98, DATA, 0, 7) == -11
    assert call(machine, 98, DATA, 128 | 9, 3) == -11


def test_futex_wait_on_bad_address_faults(machine):
    with pytest.raises(MachineError) as info:
        call(machine, 98, 0x20000, 0, 0)
    assert info.value.type == ExceptionType.PROTECTION_FAULT


@pytest.mark.parametrize("op", [1, 10, 3, 4, 5, 1 | 128])
def test_futex_wake_family_returns_zero(machine, op):
    machine.set_result(99)
    assert call(machine, 98, DATA, op, 1) == 0


def test_futex_unknown_op(machine):
    assert call(machine, 98, DATA, 6, 0) == -38


def test_tgkill_and_tkill(machine):
    assert call(machine, 131, 1, 1, 6) == 0
    assert call(machine, 131, 1, 2, 6) == -3
    assert call(machine, 130, 1, 6) == 0
    assert call(machine, 130, 5, 6) == -3