"""End-to-end stream tests against a host bash."""

import shutil

import anyio
import pytest

from conftest import needs_bash, read_until

pytestmark = [pytest.mark.anyio, needs_bash]


async def test_cat_echoes_awkward_bytes(local_guest):
    async with local_guest(stream_line_buffered=False) as guest:
        stream_id = await guest.start_stream("t", "cat")
        payload = "it's \"quoted\"\\n\nsecond line $HOME `x`\n"
        assert await guest.write_to_stream(stream_id, payload)
        assert await read_until(guest, stream_id, "`x`\n") == payload
        await guest.stop_stream(stream_id)


async def test_nul_survives(local_guest):
    async with local_guest(stream_line_buffered=False) as guest:
        stream_id = await guest.start_stream("t", "cat")
        await guest.write_to_stream(stream_id, b"a\x00b\n")
        assert await read_until(guest, stream_id, "b\n") == "a\x00b\n"
        await guest.stop_stream(stream_id)


async def test_long_input_is_chunked(local_guest):
    async with local_guest(stream_line_buffered=False) as guest:
        stream_id = await guest.start_stream("t", "cat")
        payload = "".join(f"{i:04d}" for i in range(300)) + "\n"
        await guest.write_to_stream(stream_id, payload)
        assert await read_until(guest, stream_id, "\n") == payload
        await guest.stop_stream(stream_id)


@pytest.mark.skipif(not (shutil.which("stdbuf") and shutil.which("rev")), reason="needs stdbuf and rev")
async def test_line_buffered_filter(local_guest):
    async with local_guest() as guest:
        stream_id = await guest.start_stream("t", "rev")
        await guest.write_to_stream(stream_id, "hello\n")
        assert await read_until(guest, stream_id, "olleh\n") == "olleh\n"
        await guest.write_to_stream(stream_id, "abc\n")
        assert await read_until(guest, stream_id, "cba\n") == "cba\n"
        await guest.stop_stream(stream_id)


async def test_stop_removes_everything(local_guest, tmp_path):
    async with local_guest(stream_line_buffered=False) as guest:
        stream_id = await guest.start_stream("t", "cat")
        jobs = tmp_path / "share" / "jobs"
        with anyio.fail_after(5):
            while not (jobs / f"{stream_id}_pid").exists():
                await anyio.sleep(0.05)

        await guest.stop_stream(stream_id)
        assert await guest.write_to_stream(stream_id, "late\n") is False
        assert await guest.read_stream(stream_id) == ""
        with anyio.fail_after(5):
            while any(jobs.glob(f"{stream_id}_*")):
                await anyio.sleep(0.05)


async def test_unknown_stream(local_guest):
    async with local_guest() as guest:
        assert await guest.write_to_stream("s999", "x") is False
        assert await guest.read_stream("s999") == ""
        await guest.stop_stream("s999")


async def test_job_id_is_not_a_stream(local_guest):
    async with local_guest() as guest:
        job_id = await guest.start_job("t", "sleep 0.2")
        assert await guest.write_to_stream(job_id, "x") is False
        await guest.cleanup_job(job_id)


async def test_cleanup_job_on_stream_removes_stream_files(local_guest, tmp_path):
    async with local_guest(stream_line_buffered=False) as guest:
        stream_id = await guest.start_stream("t", "cat")
        await guest.cleanup_job(stream_id)
        assert stream_id not in guest.streams.active
        assert await guest.write_to_stream(stream_id, "x") is False


@pytest.fixture
def path_without_stdbuf(tmp_path):
    """A bin dir with the tools a busybox-like guest has, and no stdbuf."""
    bindir = tmp_path / "bin"
    bindir.mkdir()
    for tool in ("bash", "sh", "cat", "mkfifo", "mkdir", "rm", "mv", "sed", "tee", "pgrep"):
        found = shutil.which(tool)
        if found:
            (bindir / tool).symlink_to(found)
    return bindir


async def test_line_buffering_without_stdbuf(local_guest, path_without_stdbuf):
    async with local_guest(extra_setup=[f"PATH={path_without_stdbuf}"]) as guest:
        assert guest.filesystem_ready
        stream_id = await guest.start_stream("t", "cat")
        await guest.write_to_stream(stream_id, "abc\n")
        assert await read_until(guest, stream_id, "abc\n") == "abc\n"
        await guest.stop_stream(stream_id)
