"""Shared crash log fixtures."""
import pytest

from crash_symbolicator.codec import parse

APP_PATH = "/var/mobile/Applications/5A1B/Demo.app/Demo"
UIKIT_PATH = "/System/Library/Frameworks/UIKit.framework/UIKit"
LIBOBJC_PATH = "/usr/lib/libobjc.A.dylib"
KERNEL_PATH = "/usr/lib/system/libsystem_kernel.dylib"

SAMPLE_CRASH = (
    "Incident Identifier: 1B0F5E4A-2C4D-4B8E-9A3F-7C1D2E3F4A5B\n"
    "CrashReporter Key:   abcdef0123456789\n"
    "Hardware Model:      iPhone5,2\n"
    "Process:         Demo [412]\n"
    f"Path:            {APP_PATH}\n"
    "Identifier:      com.example.demo\n"
    "Version:         1.0 (1.0)\n"
    "Code Type:       ARM (Native)\n"
    "Parent Process:  launchd [1]\n"
    "\n"
    "Date/Time:       2013-10-01 12:00:00.000 +0900\n"
    "OS Version:      iOS 7.0.4 (11B554a)\n"
    "Report Version:  104\n"
    "\n"
    "Exception Type:  EXC_BAD_ACCESS (SIGSEGV)\n"
    "Exception Codes: KERN_INVALID_ADDRESS at 0x00000000\n"
    "Triggered by Thread:  0\n"
    "\n"
    "Thread 0 name:  Dispatch queue: com.apple.main-thread\n"
    "Thread 0 Crashed:\n"
    "0   libobjc.A.dylib               \t0x39d0bb66 0x39d05000 + 27494\n"
    "1   Demo                          \t0x00005010 0x4000 + 4112\n"
    "2   UIKit                         \t0x31a0a100 0x31a00000 + 41216\n"
    "\n"
    "Thread 1:\n"
    "0   libsystem_kernel.dylib        \t0x3a2b8804 0x3a2b0000 + 34820\n"
    "\n"
    "Thread 0 crashed with ARM Thread State (32-bit):\n"
    "    r0: 0x00000000    r1: 0x30e5b6a1      r2: 0x00000000      r3: 0x00000000\n"
    "    pc: 0x39d0bb66  cpsr: 0x20000030\n"
    "\n"
    "Binary Images:\n"
    f"0x4000 - 0x7fff Demo armv7s  <a1b2c3d4e5f60718293a4b5c6d7e8f90> {APP_PATH}\n"
    f"0x31a00000 - 0x31afffff UIKit armv7s  <0123456789abcdef0123456789abcdef> {UIKIT_PATH}\n"
    f"0x39d05000 - 0x39d2ffff libobjc.A.dylib armv7s  <fedcba9876543210fedcba9876543210> {LIBOBJC_PATH}\n"
    f"0x3a2b0000 - 0x3a2cffff libsystem_kernel.dylib armv7s  <00112233445566778899aabbccddeeff> {KERNEL_PATH}\n"
)


@pytest.fixture
def sample_text():
    return SAMPLE_CRASH


@pytest.fixture
def sample_report():
    return parse(SAMPLE_CRASH.encode("utf-8"))


@pytest.fixture
def crash_file(tmp_path):
    path = tmp_path / "Demo.crash"
    path.write_text(SAMPLE_CRASH, encoding="utf-8")
    return path
