[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "loongemu"
version = "0.1.0"
description = "Guest memory, machine state and sandboxed Linux system calls for LoongArch userspace emulation"
requires-python = ">=3.10"
dependencies = []
keywords = ["loongarch", "emulator", "sandbox", "syscalls", "elf"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Emulators",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["loongemu"]

[tool.pytest.ini_options]
addopts = "-ra"
