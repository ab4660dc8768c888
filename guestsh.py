#!/usr/bin/env python3
"""
guestsh - Shell sessions inside a virtual machine over its serial console

Usage:
    guestsh run <command>...           Boot, run each command, print output
    guestsh shell                      Interactive shell in the guest
    guestsh snapshot <file>            Boot and save machine state to a file

Machine:
    --local               Use a host bash as the guest
    --kernel/--initrd/--append/--cdrom/--drive/--memory
                          Boot QEMU with these images
    --state FILE          Restore QEMU from a saved state
    --share DIR           Host side of the 9p share

Options:
    --serial-only         Never use the shared directory
    --network             Bring up eth0 with udhcpc after boot
    -s, --session TAG     Session tag (default: cli)
    -j, --json            Output raw JSON
    -v, --verbose         Debug logging (or GUESTSH_LOG_LEVEL)
"""

import argparse
import json
import logging
import os
import sys
import tempfile
from contextlib import asynccontextmanager
from dataclasses import asdict
from pathlib import Path
from typing import AsyncIterator

import anyio
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich import box

from guestsh_bridge import ChannelBridge
from guestsh_config import DEFAULT_SESSION, MachineConfig
from guestsh_emulator import Emulator, LocalEmulator, QemuEmulator
from guestsh_errors import GuestError
from guestsh_transport import (
    ActiveJob,
    ExecResult,
    JobStatus,
    JobTransport,
    MarkerTransport,
    Session,
    SessionRegistry,
    StreamTransport,
)

log = logging.getLogger("guestsh")

console = Console()
err_console = Console(stderr=True)


def error(msg: str):
    """Print error and exit."""
    err_console.print(f"[red]error:[/red] {msg}")
    sys.exit(1)


# ============================================================================
# GuestShell - Execution facade
# ============================================================================

class GuestShell:
    """
    Shell sessions inside one machine.

    `execute` and `pipe` are the blocking-style entry points: they use
    file-based jobs when the shared directory is up and fall back to serial
    markers otherwise. A timed-out command is returned with whatever output
    arrived and `timed_out=True`; its guest process may keep running with
    nobody watching.
    """

    def __init__(self, bridge: ChannelBridge):
        self.bridge = bridge
        self.config = bridge.config
        self.sessions = SessionRegistry(bridge)
        active: dict[str, ActiveJob] = {}
        self.jobs = JobTransport(bridge, self.sessions, active)
        self.streams = StreamTransport(
            bridge, self.sessions, active, line_buffered=self.config.stream_line_buffered,
        )
        self.markers = MarkerTransport(bridge, self.sessions)

    @property
    def ready(self) -> bool:
        return self.bridge.ready

    @property
    def filesystem_ready(self) -> bool:
        return self.bridge.filesystem_ready

    def _require_ready(self) -> None:
        if not self.bridge.ready:
            raise GuestError("machine is not ready")

    # -------------------------------------------------------------------------
    # Sessions
    # -------------------------------------------------------------------------

    async def create_shell(self, tag: str) -> Session:
        self._require_ready()
        return await self.sessions.get_or_create(tag)

    async def destroy_shell(self, tag: str) -> None:
        await self.sessions.destroy(tag)

    def shell_cwd(self, tag: str) -> str:
        return self.sessions.cwd(tag)

    # -------------------------------------------------------------------------
    # Jobs and streams
    # -------------------------------------------------------------------------

    async def start_job(self, tag: str, cmd: str, stdin: str | bytes | None = None) -> str:
        self._require_ready()
        return await self.jobs.start_job(tag, cmd, stdin)

    async def poll_job(self, job_id: str) -> JobStatus:
        return await self.jobs.poll_job(job_id)

    async def cleanup_job(self, job_id: str) -> None:
        await self.jobs.cleanup_job(job_id)

    async def start_stream(self, tag: str, cmd: str) -> str:
        self._require_ready()
        return await self.streams.start_stream(tag, cmd)

    async def write_to_stream(self, stream_id: str, text: str | bytes) -> bool:
        return await self.streams.write_to_stream(stream_id, text)

    async def read_stream(self, stream_id: str) -> str:
        return await self.streams.read(stream_id)

    async def stop_stream(self, stream_id: str) -> None:
        await self.streams.stop_stream(stream_id)

    # -------------------------------------------------------------------------
    # Blocking execution
    # -------------------------------------------------------------------------

    async def execute(
        self,
        tag: str,
        cmd: str,
        stdin: str | bytes | None = None,
        *,
        timeout: float | None = None,
        force_serial: bool = False,
    ) -> ExecResult:
        """Run cmd in the session and wait for it, bounded by timeout."""
        self._require_ready()
        if timeout is None:
            timeout = self.config.pipe_timeout if stdin else self.config.exec_timeout
        if self.bridge.filesystem_ready and not force_serial:
            return await self._execute_job(tag, cmd, stdin, timeout)
        return await self.markers.execute(tag, cmd, stdin=stdin, timeout=timeout)

    async def pipe(self, tag: str, data: str | bytes, cmd: str, **kwargs) -> ExecResult:
        """Run cmd with data on its stdin."""
        return await self.execute(tag, cmd, data, **kwargs)

    async def _execute_job(self, tag: str, cmd: str, stdin: str | bytes | None, timeout: float) -> ExecResult:
        job_id = await self.jobs.start_job(tag, cmd, stdin)
        chunks: list[str] = []
        status: JobStatus | None = None
        try:
            with anyio.move_on_after(timeout):
                while status is None or not status.done:
                    await anyio.sleep(self.config.poll_interval)
                    status = await self.jobs.poll_job(job_id)
                    chunks.append(status.new_output)
        finally:
            with anyio.CancelScope(shield=True):
                await self.jobs.cleanup_job(job_id)

        output = "".join(chunks).strip()
        if status is None or not status.done:
            log.warning("job %s timed out after %ss", job_id, timeout)
            return ExecResult(output, self.sessions.cwd(tag), None, True)
        return ExecResult(output, status.cwd or self.sessions.cwd(tag), status.exit_code)

    async def exec(self, cmd: str) -> str:
        """Output of cmd in the default session."""
        return (await self.execute(DEFAULT_SESSION, cmd)).output

    async def pipe_default(self, data: str | bytes, cmd: str) -> str:
        """Output of cmd fed with data, in the default session."""
        return (await self.pipe(DEFAULT_SESSION, data, cmd)).output

    async def self_test(self) -> bool:
        ok = "test123" in await self.exec("echo test123")
        log.info("self test: %s", "PASS" if ok else "FAIL")
        return ok

    # -------------------------------------------------------------------------
    # Machine
    # -------------------------------------------------------------------------

    async def save_state(self) -> bytes:
        return await self.bridge.save_state()

    async def destroy(self) -> None:
        await self.bridge.destroy()


@asynccontextmanager
async def open_guest(emulator: Emulator, config: MachineConfig | None = None) -> AsyncIterator[GuestShell]:
    """Boot a machine, yield its GuestShell, and always tear it down.

    Errors come out as themselves rather than wrapped in an exception group.
    """
    try:
        async with anyio.create_task_group() as tg:
            bridge = ChannelBridge(emulator, tg, config)
            try:
                await bridge.initialize()
                yield GuestShell(bridge)
            finally:
                with anyio.CancelScope(shield=True):
                    await bridge.destroy()
                tg.cancel_scope.cancel()
    except BaseExceptionGroup as group:
        if len(group.exceptions) == 1:
            raise group.exceptions[0] from None
        raise


# ============================================================================
# CLI
# ============================================================================

def setup_logging(verbose: bool):
    level = "DEBUG" if verbose else os.environ.get("GUESTSH_LOG_LEVEL", "WARNING").upper()
    logging.basicConfig(
        level=level,
        format="%(name)s: %(message)s",
        handlers=[RichHandler(console=err_console, show_path=False)],
    )


def build_emulator(args) -> Emulator:
    share = args.share
    if args.local:
        share = share or tempfile.mkdtemp(prefix="guestsh-share-")
        return LocalEmulator(share)
    if not (args.kernel or args.cdrom or args.drive or args.state):
        error("no machine: use --local or give --kernel/--cdrom/--drive/--state")
    return QemuEmulator(
        share or tempfile.mkdtemp(prefix="guestsh-share-"),
        binary=args.qemu,
        kernel=args.kernel,
        initrd=args.initrd,
        append=args.append,
        cdrom=args.cdrom,
        drive=args.drive,
        memory=args.memory,
        state_file=args.state,
    )


def build_config(args) -> MachineConfig:
    config = MachineConfig(use_filesystem=not args.serial_only, network=args.network)
    if args.local:
        config.settle_delay = 0.1
        config.step_delay = 0.0
    return config


def print_result(result: ExecResult, as_json: bool):
    if as_json:
        console.print_json(json.dumps(asdict(result)))
        return
    if result.output:
        console.print(result.output, markup=False, highlight=False)
    if result.timed_out:
        console.print("[yellow]timed out, output may be truncated[/yellow]")
    elif result.exit_code:
        console.print(f"[red]exit {result.exit_code}[/red]")


async def cmd_run(args):
    async with open_guest(build_emulator(args), build_config(args)) as guest:
        for command in args.args:
            result = await guest.execute(args.session, command)
            if not args.json:
                console.print(f"[dim]{result.cwd}$[/dim] [bold]{command}[/bold]")
            print_result(result, args.json)


async def cmd_shell(args):
    async with open_guest(build_emulator(args), build_config(args)) as guest:
        mode = "9p" if guest.filesystem_ready else "serial"
        console.print(Panel(
            f"session [bold cyan]{args.session}[/bold cyan] [dim]({mode})[/dim]\n"
            "[dim]exit or Ctrl-D to quit[/dim]",
            box=box.ROUNDED,
        ))
        while True:
            prompt = f"[green]{guest.shell_cwd(args.session)}[/green] $ "
            try:
                line = await anyio.to_thread.run_sync(console.input, prompt)
            except EOFError:
                break
            if line.strip() in ("exit", "logout"):
                break
            if not line.strip():
                continue
            print_result(await guest.execute(args.session, line), args.json)


async def cmd_snapshot(args):
    # Snapshot from serial-only mode: QEMU won't migrate with the share mounted
    args.serial_only = True
    async with open_guest(build_emulator(args), build_config(args)) as guest:
        state = await guest.save_state()
    Path(args.args[0]).write_bytes(state)
    console.print(f"[green]saved[/green] {args.args[0]} ({len(state) / 1048576:.1f} MB)")


def main():
    parser = argparse.ArgumentParser(description="Shell sessions inside a virtual machine")
    parser.add_argument("-s", "--session", default="cli", help="Session tag")
    parser.add_argument("-j", "--json", action="store_true", help="JSON output")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--local", action="store_true", help="Use a host bash as the guest")
    parser.add_argument("--share", help="Host side of the shared directory")
    parser.add_argument("--qemu", default="qemu-system-x86_64", help="QEMU binary")
    parser.add_argument("--kernel", help="Kernel image")
    parser.add_argument("--initrd", help="Initial ramdisk")
    parser.add_argument("--append", default="console=ttyS0", help="Kernel command line")
    parser.add_argument("--cdrom", help="ISO image")
    parser.add_argument("--drive", help="Disk image")
    parser.add_argument("--memory", type=int, default=512, help="Memory in MB")
    parser.add_argument("--state", help="Saved state to restore")
    parser.add_argument("--serial-only", action="store_true", help="Never use the shared directory")
    parser.add_argument("--network", action="store_true", help="Bring up eth0 after boot")
    parser.add_argument("command", nargs="?", help="Command: run, shell, snapshot")
    parser.add_argument("args", nargs="*", help="Arguments")

    args = parser.parse_args()
    setup_logging(args.verbose)

    cmd = (args.command or "shell").lower()
    handlers = {"run": cmd_run, "shell": cmd_shell, "snapshot": cmd_snapshot}
    if cmd not in handlers:
        error(f"unknown command: {cmd}")
    if cmd == "run" and not args.args:
        error("run <command>...")
    if cmd == "snapshot" and len(args.args) != 1:
        error("snapshot <file>")

    try:
        anyio.run(handlers[cmd], args)
    except GuestError as e:
        error(str(e))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
