"""Serial-only execution with the share disabled."""

import pytest

from conftest import fast_config, needs_bash
from guestsh import open_guest
from guestsh_config import TTY_LINE_MAX

pytestmark = pytest.mark.anyio


@needs_bash
async def test_echo(local_guest):
    async with local_guest(use_filesystem=False) as guest:
        assert not guest.filesystem_ready
        result = await guest.execute("t", "echo ok")
        assert result.output == "ok"
        assert result.exit_code == 0
        assert not result.timed_out


@needs_bash
async def test_exit_status(local_guest):
    async with local_guest(use_filesystem=False) as guest:
        result = await guest.execute("t", "echo out; false")
        assert result.output == "out"
        assert result.exit_code == 1


@needs_bash
async def test_trailing_separators(local_guest):
    async with local_guest(use_filesystem=False) as guest:
        result = await guest.execute("t", "echo hi;", timeout=5)
        assert (result.output, result.exit_code, result.timed_out) == ("hi", 0, False)
        result = await guest.execute("t", "sleep 0.1 &", timeout=5)
        assert not result.timed_out
        assert result.exit_code == 0
        assert (await guest.execute("t", "echo still here")).output == "still here"


@needs_bash
async def test_stdin(local_guest):
    async with local_guest(use_filesystem=False) as guest:
        result = await guest.pipe("t", "hello\nworld\n", "tr a-z A-Z")
        assert result.output == "HELLO\nWORLD"


@needs_bash
async def test_large_stdin(local_guest, tmp_path):
    async with local_guest(use_filesystem=False) as guest:
        result = await guest.pipe("t", "x" * 5000, "wc -c")
        assert result.output == "5000"
        session = guest.sessions.get("t")
        assert not list((tmp_path / "scratch").glob(f"{session.work_dir.rsplit('/', 1)[1]}/in_*"))


async def test_stdin_lines_fit_a_tty(fake, tmp_path):
    async with open_guest(fake, fast_config(tmp_path, use_filesystem=False)) as guest:
        result = await guest.pipe("t", b"\x00" * 3000, "wc -c", timeout=0.2)
        assert result.timed_out
        lines = [line for text in fake.sent for line in text.split("\n")]
        assert max(len(line) for line in lines) < TTY_LINE_MAX
        assert sum(line.count("\\x00") for line in lines) == 3000


@needs_bash
async def test_cwd_follows_session(local_guest, tmp_path):
    async with local_guest(use_filesystem=False) as guest:
        moved = await guest.execute("a", f"cd {tmp_path}")
        assert moved.cwd == str(tmp_path)
        assert (await guest.execute("a", "pwd")).output == str(tmp_path)
        assert (await guest.execute("b", "pwd")).output == "/"
        assert guest.shell_cwd("a") == str(tmp_path)


@needs_bash
async def test_timeout_returns_partial_output(local_guest):
    async with local_guest(use_filesystem=False) as guest:
        result = await guest.execute("t", "echo early; sleep 3", timeout=0.5)
        assert result.timed_out
        assert result.exit_code is None
        assert result.output == "early"
        assert guest.markers.pending == {}


@needs_bash
async def test_forced_serial_with_share_up(local_guest):
    async with local_guest() as guest:
        assert guest.filesystem_ready
        result = await guest.execute("t", "echo serial", force_serial=True)
        assert result.output == "serial"
        assert guest.jobs.active == {}
