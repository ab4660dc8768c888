"""
Channel bridge: the one owner of a machine and its two channels.

The serial console is the only always-available path into the guest. Every
byte the guest prints goes through a single pump task that appends it to a
bounded SerialLog and fans it out to whoever registered a listener. The
shared directory is the second, optional channel; it only counts as ready
once the guest has proven it can write a file the host can read.
"""

import codecs
import itertools
import logging
from typing import Callable

import anyio
import anyio.abc

from guestsh_commands import echo_marker, gen_token, marker
from guestsh_config import JOBS_DIR, TTY_LINE_MAX, MachineConfig
from guestsh_emulator import Emulator
from guestsh_errors import (
    BootTimeout,
    GuestError,
    MachineDestroyed,
    MarkerTimeout,
    NotFound,
)

log = logging.getLogger("guestsh.bridge")


# ============================================================================
# SerialLog - Bounded console tail with waiting
# ============================================================================

class SerialLog:
    """Tail of console output with absolute offsets and async waiting."""

    def __init__(self, limit: int, trim: int):
        self._limit = limit
        self._trim = trim
        self._text = ""
        self._base = 0  # absolute offset of self._text[0]
        self._condition = anyio.Condition()

    @property
    def end(self) -> int:
        """Absolute offset one past the newest character."""
        return self._base + len(self._text)

    def tail(self, n: int = 200) -> str:
        return self._text[-n:]

    def find(self, needles: tuple[str, ...] | list[str], since: int = 0) -> int:
        """Absolute end offset of the first needle found after `since`, or -1."""
        start = max(since - self._base, 0)
        best = -1
        for needle in needles:
            idx = self._text.find(needle, start)
            if idx >= 0 and (best < 0 or idx + len(needle) < best):
                best = idx + len(needle)
        return best if best < 0 else best + self._base

    async def append(self, text: str) -> None:
        async with self._condition:
            self._text += text
            if len(self._text) > self._limit:
                cut = len(self._text) - self._trim
                self._text = self._text[cut:]
                self._base += cut
            self._condition.notify_all()

    async def wait_for(self, needles: tuple[str, ...] | list[str], since: int = 0) -> int:
        """Wait until a needle appears after `since`. Returns its end offset."""
        async with self._condition:
            while True:
                found = self.find(needles, since)
                if found >= 0:
                    return found
                await self._condition.wait()


# ============================================================================
# ChannelBridge
# ============================================================================

class ChannelBridge:
    """Owns one emulator: boot handshake, console I/O and the shared directory."""

    def __init__(
        self,
        emulator: Emulator,
        task_group: anyio.abc.TaskGroup,
        config: MachineConfig | None = None,
    ):
        self.emulator = emulator
        self.config = config or MachineConfig()
        self._tg = task_group
        self.serial = SerialLog(self.config.serial_buf_max, self.config.serial_buf_trim)
        self._listeners: dict[str, Callable[[str], None]] = {}
        self._send_lock = anyio.Lock()
        self._ids = itertools.count()
        self._ready = False
        self._filesystem_ready = False
        self._destroyed = False

    @property
    def ready(self) -> bool:
        return self._ready

    @property
    def filesystem_ready(self) -> bool:
        return self._filesystem_ready

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    @property
    def scratch_dir(self) -> str:
        return self.config.scratch_dir

    @property
    def guest_jobs_dir(self) -> str:
        return f"{self.emulator.guest_root.rstrip('/')}/{JOBS_DIR}"

    def host_path(self, name: str) -> str:
        """Share-relative path of a job file."""
        return f"{JOBS_DIR}/{name}"

    def guest_path(self, name: str) -> str:
        """Guest-side absolute path of the same job file."""
        return f"{self.guest_jobs_dir}/{name}"

    def next_id(self) -> int:
        """Next value of the counter shared by shells, jobs, streams and markers."""
        return next(self._ids)

    def _check_alive(self) -> None:
        if self._destroyed:
            raise MachineDestroyed("machine was destroyed")

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def initialize(self) -> None:
        """Boot (or restore) the guest and bring up both channels."""
        self._check_alive()
        cfg = self.config
        await self.emulator.start()
        self._tg.start_soon(self._pump_serial)

        try:
            with anyio.fail_after(cfg.boot_timeout):
                if self.emulator.restored:
                    log.info("restoring state")
                    await anyio.sleep(cfg.settle_delay)
                else:
                    await self._await_shell()
        except TimeoutError:
            log.error("boot timeout, console tail: %r", self.serial.tail())
            raise BootTimeout(f"no shell after {cfg.boot_timeout}s") from None

        await self._configure_shell()
        self._ready = True
        log.info("guest ready")

        if cfg.use_filesystem:
            await self._attach_filesystem()
        else:
            log.info("filesystem channel disabled, using serial markers")

    async def _await_shell(self) -> None:
        cfg = self.config
        log.info("waiting for login prompt")
        login_at = await self.serial.wait_for(cfg.login_prompts)
        log.info("starting shell")
        await anyio.sleep(cfg.login_send_delay)
        await self.send_text("\n")
        await self.serial.wait_for(cfg.shell_prompts, since=login_at)
        await anyio.sleep(cfg.shell_config_delay)

    async def _configure_shell(self) -> None:
        cfg = self.config
        steps = ["stty -echo", 'PS1=""', f"mkdir -p {cfg.scratch_dir}"]
        steps += cfg.extra_setup
        for step in steps:
            await self.send_text(step + "\n")
            await anyio.sleep(cfg.step_delay)
        if cfg.network:
            log.info("configuring network")
            await self.send_text("[ -e /sys/class/net/eth0 ] && udhcpc -i eth0 2>/dev/null &\n")
            await anyio.sleep(cfg.network_delay)

    async def _attach_filesystem(self) -> None:
        token = gen_token()
        ready_file = f"{self.guest_jobs_dir}/.ready"
        line = f"mkdir -p {self.guest_jobs_dir} && echo 1 > {ready_file} && {echo_marker('FS', token)}"
        if self.emulator.mount_command:
            line = f"{self.emulator.mount_command}; {line}"

        log.info("setting up shared job directory")
        try:
            await self.emulator.ensure_directory(JOBS_DIR)
            await self.wait_for_marker(marker("FS", token), self.config.marker_timeout, send=line + "\n")
            data = await self.emulator.read_file(self.host_path(".ready"))
            if data.strip() != b"1":
                raise GuestError(f"unexpected ready file contents {data!r}")
        except (GuestError, OSError) as e:
            # Covers MarkerTimeout and NotFound: the guest wrote somewhere we can't see
            log.warning("filesystem channel unavailable, falling back to serial markers: %s", e)
            return
        self._filesystem_ready = True
        log.info("filesystem channel ready")

    async def save_state(self) -> bytes:
        self._check_alive()
        return await self.emulator.save_state()

    async def destroy(self) -> None:
        """Tear the machine down. Nothing may be sent afterwards."""
        if self._destroyed:
            return
        self._destroyed = True
        self._ready = False
        self._filesystem_ready = False
        self._listeners.clear()
        await self.emulator.destroy()
        log.info("machine destroyed")

    # -------------------------------------------------------------------------
    # Serial I/O
    # -------------------------------------------------------------------------

    async def _pump_serial(self) -> None:
        """Read the console until it closes; feed the log and all listeners."""
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            async for chunk in self.emulator.output():
                text = decoder.decode(chunk)
                if not text:
                    continue
                await self.serial.append(text)
                for listener in list(self._listeners.values()):
                    listener(text)
        except (anyio.ClosedResourceError, anyio.BrokenResourceError):
            pass
        except Exception:
            log.exception("serial pump failed")
        log.debug("serial console closed")

    def add_listener(self, key: str, callback: Callable[[str], None]) -> None:
        """Receive every console chunk from now on."""
        self._listeners[key] = callback

    def remove_listener(self, key: str) -> None:
        self._listeners.pop(key, None)

    async def send_text(self, text: str) -> None:
        """Type text into the console. No acknowledgment."""
        self._check_alive()
        preview = text[:120].replace("\n", "\\n")
        log.debug("send (%d chars): %s%s", len(text), preview, "..." if len(text) > 120 else "")
        if any(len(line) > TTY_LINE_MAX for line in text.split("\n")):
            log.warning("sending a line over %d chars, a tty will truncate it", TTY_LINE_MAX)
        async with self._send_lock:
            await self.emulator.send(text.encode())

    async def wait_for_marker(self, marker_text: str, timeout: float, send: str | None = None) -> None:
        """Wait for marker_text in console output arriving after this call.

        `send` is typed only once the listener is in place, so a fast guest
        cannot answer before anyone is listening.
        """
        self._check_alive()
        found = anyio.Event()
        window = ""
        keep = max(len(marker_text), 500)

        def on_text(text: str) -> None:
            nonlocal window
            window += text
            if marker_text in window:
                found.set()
            elif len(window) > 2 * keep:
                window = window[-keep:]

        key = f"w{self.next_id()}"
        self.add_listener(key, on_text)
        try:
            if send is not None:
                await self.send_text(send)
            with anyio.fail_after(timeout):
                await found.wait()
        except TimeoutError:
            log.warning("timed out waiting for %r, console tail: %r", marker_text, self.serial.tail())
            raise MarkerTimeout(marker_text, timeout) from None
        finally:
            self.remove_listener(key)
        log.debug("marker %r received", marker_text)

    # -------------------------------------------------------------------------
    # Shared directory
    # -------------------------------------------------------------------------

    async def read_file(self, path: str) -> bytes:
        self._check_alive()
        try:
            return await self.emulator.read_file(path)
        except NotFound:
            log.debug("not found yet: %s", path)
            raise

    async def create_file(self, path: str, data: bytes) -> None:
        self._check_alive()
        await self.emulator.create_file(path, data)

    async def ensure_directory(self, path: str) -> None:
        self._check_alive()
        await self.emulator.ensure_directory(path)
