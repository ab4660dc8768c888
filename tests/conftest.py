"""
Pytest configuration and fixtures for guestsh tests.

Two kinds of machine are used:
- FakeEmulator: scripted console in memory, for handshake and bookkeeping.
- LocalEmulator: a real host bash, for end-to-end behaviour.
"""

import math
import re
import shutil
from pathlib import Path

import anyio
import pytest

from guestsh import open_guest
from guestsh_config import MachineConfig
from guestsh_emulator import LocalEmulator, SharedDirectoryEmulator

FS_REQUEST = re.compile(r"echo '__GSH_'FS_(\w+)")

needs_bash = pytest.mark.skipif(
    not (shutil.which("bash") and shutil.which("mkfifo")),
    reason="needs bash and mkfifo",
)


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeEmulator(SharedDirectoryEmulator):
    """In-memory console that answers the boot handshake and the share check."""

    def __init__(
        self,
        share_dir: Path,
        *,
        restored: bool = False,
        banner: bool = True,
        answer_fs: bool = True,
        ready_contents: bytes = b"1\n",
    ):
        super().__init__(share_dir)
        self.restored = restored
        self.guest_root = str(share_dir)
        self.banner = banner
        self.answer_fs = answer_fs
        self.ready_contents = ready_contents
        self.sent: list[str] = []
        self.started = False
        self.destroyed = False
        self._send = None
        self._receive = None

    def push(self, text: str) -> None:
        """Make the guest print text."""
        self._send.send_nowait(text.encode())

    async def start(self) -> None:
        self._send, self._receive = anyio.create_memory_object_stream(math.inf)
        self.started = True
        if self.banner and not self.restored:
            self.push("Booting...\nWelcome to Alpine\nlocalhost login: ")

    async def send(self, data: bytes) -> None:
        text = data.decode()
        self.sent.append(text)
        if text == "\n" and not self.restored:
            self.push("\nlocalhost:~# ")
        match = FS_REQUEST.search(text)
        if match and self.answer_fs:
            await self.create_file("jobs/.ready", self.ready_contents)
            self.push(f"__GSH_FS_{match.group(1)}\n")

    async def output(self):
        async for chunk in self._receive:
            yield chunk

    async def save_state(self) -> bytes:
        return b"STATE"

    async def destroy(self) -> None:
        self.destroyed = True
        if self._send is not None:
            await self._send.aclose()


def fast_config(tmp_path: Path, **overrides) -> MachineConfig:
    values = dict(
        boot_timeout=5.0,
        settle_delay=0.2,
        login_send_delay=0.0,
        shell_config_delay=0.0,
        step_delay=0.0,
        marker_timeout=5.0,
        scratch_dir=str(tmp_path / "scratch"),
    )
    values.update(overrides)
    return MachineConfig(**values)


@pytest.fixture
def fake(tmp_path):
    return FakeEmulator(tmp_path / "share")


@pytest.fixture
def local_guest(tmp_path):
    """Factory for a booted GuestShell on a host bash. Use with `async with`."""
    def open_local(**overrides):
        return open_guest(LocalEmulator(tmp_path / "share"), fast_config(tmp_path, **overrides))
    return open_local


async def wait_job(guest, job_id, timeout=10.0):
    """Poll a job to completion. Returns (joined output, last status)."""
    chunks = []
    with anyio.fail_after(timeout):
        while True:
            status = await guest.poll_job(job_id)
            chunks.append(status.new_output)
            if status.done:
                return "".join(chunks), status
            await anyio.sleep(0.05)


async def read_until(guest, stream_id, expected, timeout=10.0):
    """Read a stream until the accumulated output contains expected."""
    got = ""
    with anyio.fail_after(timeout):
        while expected not in got:
            got += await guest.read_stream(stream_id)
            await anyio.sleep(0.05)
    return got
