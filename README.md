# loongemu

Building blocks for a LoongArch userspace emulator. The package provides a
guest memory arena, the machine state around it, and sandboxed Linux system
call handlers that act on that state.

## Modules

### `loongemu.memory`

- `Memory(arena_size, rodata_start=0, data_start=0, binary=b"")` is one flat
  zero-filled arena. Addresses from `rodata_start` up can be read. Addresses
  from `data_start` up can be written.
  - `read(addr, size=8)` and `write(addr, value, size=8)` do little-endian
    integer access of 1, 2, 4 or 8 bytes. `view(addr, count)` returns a live
    `memoryview`.
  - `copy_to_guest`, `copy_from_guest`, `memset`, `memcmp`, `strlen`,
    `memstring` and `copy_into_arena_unsafe` handle byte ranges.
  - `mmap_allocate(size)` is a bump allocator that rounds up to whole pages.
    `mmap_deallocate(addr, size)` gives back the most recent region.
  - `allocate_custom_arena(size, rodata_start, data_start)` resizes the arena
    and sets its region boundaries. `reset()` zeroes the arena.
  - The layout fields `start_address`, `stack_address`, `exit_address`,
    `heap_address`, `brk_address` and `mmap_address` are plain attributes.
  - `load_symbols(binary)`, `address_of(name)` and `lookup_symbol(addr)`
    work with the symbol list.
- `parse_elf_symbols(binary, verbose=False)` reads the function and object
  symbols from the static and dynamic symbol tables of a 64-bit
  little-endian ELF file. It returns a list of `Symbol(address, size, name)`.
- A bad access raises `MachineError`. Its `type` is an `ExceptionType` and
  its `data` holds the faulting address or another value.

### `loongemu.machine`

- `Machine(memory, options=None)` holds:
  - `registers`, a `Registers` object with `gpr`, `fpr`, `fcc`, `pc` and
    `copy()`. Register 0 always reads as zero.
  - `instruction_counter` and `max_instructions`, used by `stop()`,
    `stopped()` and `instruction_limit_reached()`.
  - a system call table: `install_syscall_handler(sysnum, handler)` and
    `system_call(sysnum)`. A number with no handler raises `MachineError`
    with `UNIMPLEMENTED_SYSCALL`.
  - `set_result(value)` and `return_value(signed=False)`, which use register
    A0.
  - `gettid()`, `clear_tid_address` and `robust_list`.
- `setup_linux(args, env)` lays out the following on the guest stack, below
  the current stack pointer: the strings, 16 random bytes, the auxiliary
  vector, envp, argv and argc.
- `stack_push(sp, data)` copies data below `sp` with 16-byte alignment.
- `prepare_call(exit_addr, *args)` sets up a guest function call:
  - `str` and bytes-like arguments are pushed on the stack and passed by
    pointer.
  - `int` and integer `Enum` arguments go in A0–A7.
  - `float` arguments go in FA0–FA7 as 64-bit bit patterns.
  - RA is set to `exit_addr`.
- `MachineOptions` holds `memory_max`, `verbose_loader` and
  `verbose_syscalls`. When `verbose_syscalls` is true, handlers write a trace
  line through `Machine.print`.

### `loongemu.linux_syscalls`

`setup_linux_syscalls(machine)` installs sandboxed handlers for the following
calls. None of them touch the host filesystem.

- Output: `write` and `writev` to fds 1 and 2 go to standard output.
- Input: `read` returns end-of-file on stdin.
- Files: `openat` fails. `close`, `fstat`, `ioctl` and `ppoll` act only on
  stdio. `readlinkat` answers only `/proc/self/exe`.
- Memory: `mmap` uses `Memory.mmap_allocate`. `brk` always returns 0.
- Threads: `futex` does not block.
- Signals: `tgkill` with signal 6 raises `MachineError` with `GUEST_ABORT`.
- Other calls: `exit`, `exit_group`, `fcntl`, `fstatat`, `mprotect`,
  `madvise`, `set_tid_address`, `set_robust_list`, `gettid`, `getpid`,
  `getuid` and the other id calls, `prlimit64`, `clock_gettime`,
  `gettimeofday`, `rt_sigaction`, `rt_sigprocmask`, `getrandom` and `prctl`.

### `loongemu.threads`

`setup_posix_threads(machine)` installs single-threaded versions of these
calls:

- `clone` and `clone3` refuse to create threads. They honour
  `CLONE_SETTLS`.
- `futex` never waits.
- `tgkill` and `tkill` succeed only for the machine's own thread id.
- `exit` and `exit_group` clear the word at `clear_tid_address` and then
  stop the machine.
- `set_tid_address` and `gettid` are also installed.

### `loongemu.accelerate`

`setup_accelerated_syscalls(machine)` installs native handlers as system
calls 500–511 for `memcpy`, `memset`, `memcmp`, `memmove`, `memchr`,
`strlen`, `strnlen`, `strcmp` and `strncmp`. It looks up the guest routines
listed in `PATCHED_SYMBOLS`. It returns a dict that maps the address of each
routine it finds to the system call number that should replace it.

## Example

```python
from loongemu.memory import Memory
from loongemu.machine import Machine, MachineOptions
from loongemu.linux_syscalls import setup_linux_syscalls

memory = Memory(arena_size=1 << 20, rodata_start=0x1000, data_start=0x10000)
memory.stack_address = 0xF0000
machine = Machine(memory, MachineOptions())
setup_linux_syscalls(machine)
machine.setup_linux(["program"], ["LC_ALL=C"])
```

## What it does not do

- The package does not decode or execute instructions. There is no
  interpreter loop and no command to run a program. Something else has to
  drive `Machine.system_call`.
- ELF loading is limited to reading symbols. Program segments are not
  mapped into the arena.
- The addresses returned by `setup_accelerated_syscalls` are not patched
  into any code.

## Tests

```
pip install -e .[test]
pytest
```