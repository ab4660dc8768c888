"""
Emulator backends.

An emulator is everything the host can do to a virtual machine: push bytes
into its serial console, read what the console prints, touch files in the
directory shared with the guest, and save or tear down the whole machine.
"""

import json
import logging
import os
import shlex
import shutil
import signal
import subprocess
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path, PurePosixPath
from typing import Any, AsyncIterator

import anyio
import anyio.abc
from anyio.streams.buffered import BufferedByteReceiveStream

from guestsh_errors import GuestError, NotFound, UnsupportedOperation

log = logging.getLogger("guestsh.emulator")


# ============================================================================
# Emulator - Capability set of one virtual machine
# ============================================================================

class Emulator(ABC):
    """Host-side handle on a virtual machine."""

    # Started from saved state: no boot banner, just a settle delay
    restored: bool = False
    # Where the shared directory shows up inside the guest
    guest_root: str = "/mnt/host"
    # Guest command that mounts the share, if it needs mounting
    mount_command: str | None = None

    @abstractmethod
    async def start(self) -> None:
        """Boot or restore the machine."""
        pass

    @abstractmethod
    async def send(self, data: bytes) -> None:
        """Write raw bytes to the serial console."""
        pass

    @abstractmethod
    def output(self) -> AsyncIterator[bytes]:
        """Iterate over chunks printed on the serial console."""
        pass

    @abstractmethod
    async def read_file(self, path: str) -> bytes:
        """Read a file relative to the share root. Raises NotFound."""
        pass

    @abstractmethod
    async def create_file(self, path: str, data: bytes) -> None:
        """Create or replace a file relative to the share root."""
        pass

    @abstractmethod
    async def ensure_directory(self, path: str) -> None:
        """Create a directory (and parents) relative to the share root."""
        pass

    @abstractmethod
    async def save_state(self) -> bytes:
        """Snapshot the whole machine."""
        pass

    @abstractmethod
    async def destroy(self) -> None:
        """Stop the machine and release everything it holds."""
        pass


class SharedDirectoryEmulator(Emulator):
    """File capabilities backed by the host side of a shared directory."""

    def __init__(self, share_dir: str | Path):
        self.share_dir = Path(share_dir)

    def _resolve(self, path: str) -> anyio.Path:
        rel = PurePosixPath(path)
        if rel.is_absolute() or ".." in rel.parts:
            raise ValueError(f"path escapes the share: {path}")
        return anyio.Path(self.share_dir / rel)

    async def read_file(self, path: str) -> bytes:
        try:
            return await self._resolve(path).read_bytes()
        except FileNotFoundError:
            raise NotFound(path) from None

    async def create_file(self, path: str, data: bytes) -> None:
        target = self._resolve(path)
        await target.parent.mkdir(parents=True, exist_ok=True)
        await target.write_bytes(data)

    async def ensure_directory(self, path: str) -> None:
        await self._resolve(path).mkdir(parents=True, exist_ok=True)


class ProcessEmulator(SharedDirectoryEmulator):
    """A child process whose stdin/stdout is the serial console."""

    # Where the child's stderr goes
    stderr: Any = None

    def __init__(self, share_dir: str | Path):
        super().__init__(share_dir)
        self._process: anyio.abc.Process | None = None

    @abstractmethod
    def command(self) -> list[str]:
        """Argument vector of the child process."""
        pass

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def start(self) -> None:
        await anyio.Path(self.share_dir).mkdir(parents=True, exist_ok=True)
        command = self.command()
        # Own session, so teardown can kill whatever the guest left running
        self._process = await anyio.open_process(
            command,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=self.stderr,
            start_new_session=True,
        )
        log.info("started %s (pid %d)", command[0], self._process.pid)
        log.debug("command: %s", shlex.join(command))

    async def send(self, data: bytes) -> None:
        if self._process is None or self._process.stdin is None:
            raise GuestError("emulator is not running")
        await self._process.stdin.send(data)

    async def output(self) -> AsyncIterator[bytes]:
        if self._process is None or self._process.stdout is None:
            return
        async for chunk in self._process.stdout:
            yield chunk

    async def destroy(self) -> None:
        process, self._process = self._process, None
        if process is None:
            return
        if process.returncode is None:
            try:
                os.killpg(process.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
        with anyio.CancelScope(shield=True):
            await process.aclose()
        log.info("stopped pid %d", process.pid)


# ============================================================================
# LocalEmulator - Host shell standing in for a guest
# ============================================================================

class LocalEmulator(ProcessEmulator):
    """
    A host `bash` driven exactly like a guest console.

    The share directory is visible under the same absolute path on both
    sides, so no mount is needed. There is no boot banner; the shell is
    treated like a restored snapshot.
    """

    restored = True
    stderr = subprocess.STDOUT

    def __init__(self, share_dir: str | Path, shell: str = "bash"):
        super().__init__(share_dir)
        self.shell = shell
        self.guest_root = str(Path(share_dir).resolve())

    def command(self) -> list[str]:
        return [self.shell]

    async def save_state(self) -> bytes:
        raise UnsupportedOperation("a local shell has no machine state to save")


# ============================================================================
# QemuEmulator - Full system VM with a 9p share
# ============================================================================

class QmpClient:
    """Minimal QEMU Machine Protocol client over a unix socket."""

    def __init__(self, path: str | Path):
        self.path = str(path)
        self._stream: anyio.abc.SocketStream | None = None
        self._reader: BufferedByteReceiveStream | None = None

    async def __aenter__(self) -> "QmpClient":
        self._stream = await anyio.connect_unix(self.path)
        self._reader = BufferedByteReceiveStream(self._stream)
        greeting = await self._receive()
        log.debug("qmp greeting: %s", greeting.get("QMP", {}).get("version"))
        await self.execute("qmp_capabilities")
        return self

    async def __aexit__(self, *exc) -> None:
        if self._stream is not None:
            await self._stream.aclose()
            self._stream = None

    async def _receive(self) -> dict:
        line = await self._reader.receive_until(b"\n", 1 << 20)
        return json.loads(line)

    async def execute(self, command: str, arguments: dict | None = None) -> Any:
        request: dict[str, Any] = {"execute": command}
        if arguments:
            request["arguments"] = arguments
        await self._stream.send(json.dumps(request).encode() + b"\n")
        while True:
            reply = await self._receive()
            if "event" in reply:
                log.debug("qmp event: %s", reply["event"])
                continue
            if "error" in reply:
                err = reply["error"]
                raise GuestError(f"qmp {command}: {err.get('class')}: {err.get('desc')}")
            return reply.get("return", {})


class QemuEmulator(ProcessEmulator):
    """
    qemu-system-* with the console on stdio, a 9p share and a QMP socket.

    QEMU refuses to migrate while the 9p share is mounted in the guest, so
    snapshots must be taken from a machine running in serial-only mode.
    """

    def __init__(
        self,
        share_dir: str | Path,
        *,
        binary: str = "qemu-system-x86_64",
        kernel: str | None = None,
        initrd: str | None = None,
        append: str = "console=ttyS0",
        cdrom: str | None = None,
        drive: str | None = None,
        memory: int = 512,
        state_file: str | Path | None = None,
        guest_root: str = "/mnt/host",
        mount_tag: str = "host9p",
        extra_args: list[str] | None = None,
    ):
        super().__init__(share_dir)
        self.binary = binary
        self.kernel = kernel
        self.initrd = initrd
        self.append = append
        self.cdrom = cdrom
        self.drive = drive
        self.memory = memory
        self.state_file = state_file
        self.mount_tag = mount_tag
        self.extra_args = list(extra_args or [])
        self.restored = state_file is not None
        self.guest_root = guest_root
        self.mount_command = (
            f"mkdir -p {guest_root} && "
            f"mount -t 9p -o trans=virtio,version=9p2000.L {mount_tag} {guest_root} 2>/dev/null"
        )
        self._runtime_dir: Path | None = None

    @property
    def qmp_socket(self) -> Path:
        if self._runtime_dir is None:
            raise GuestError("emulator is not running")
        return self._runtime_dir / "qmp.sock"

    def command(self) -> list[str]:
        share = self.share_dir.resolve()
        cmd = [
            self.binary,
            "-m", str(self.memory),
            "-display", "none",
            "-monitor", "none",
            "-serial", "stdio",
            "-qmp", f"unix:{self.qmp_socket},server=on,wait=off",
            "-virtfs", f"local,path={share},mount_tag={self.mount_tag},security_model=none,id={self.mount_tag}",
        ]
        if self.kernel:
            cmd += ["-kernel", self.kernel, "-append", self.append]
            if self.initrd:
                cmd += ["-initrd", self.initrd]
        if self.cdrom:
            cmd += ["-cdrom", self.cdrom]
        if self.drive:
            cmd += ["-drive", f"file={self.drive},if=virtio"]
        if self.state_file:
            cmd += ["-incoming", f"exec:cat {shlex.quote(str(self.state_file))}"]
        return cmd + self.extra_args

    async def start(self) -> None:
        self._runtime_dir = Path(tempfile.mkdtemp(prefix="guestsh-"))
        await super().start()

    async def save_state(self) -> bytes:
        target = self.qmp_socket.parent / "state.bin"
        async with QmpClient(self.qmp_socket) as qmp:
            await qmp.execute("migrate", {"uri": f"exec:cat > {shlex.quote(str(target))}"})
            while True:
                info = await qmp.execute("query-migrate")
                status = info.get("status")
                if status == "completed":
                    break
                if status in ("failed", "cancelled"):
                    raise GuestError(f"migration {status}: {info.get('error-desc', '')}")
                await anyio.sleep(0.2)
            # Migration leaves the source paused
            await qmp.execute("cont")
        path = anyio.Path(target)
        data = await path.read_bytes()
        await path.unlink()
        log.info("saved state (%.1f MB)", len(data) / 1048576)
        return data

    async def destroy(self) -> None:
        await super().destroy()
        if self._runtime_dir is not None:
            shutil.rmtree(self._runtime_dir, ignore_errors=True)
            self._runtime_dir = None
