"""Guest memory, machine state and sandboxed system calls for LoongArch emulation."""

__version__ = "0.1.0"
__all__ = ["memory", "machine", "linux_syscalls", "threads", "accelerate"]