"""
Sessions and the three ways of running a command in the guest.

- JobTransport: one-shot commands through files in the shared directory.
- StreamTransport: long-lived commands fed through a FIFO.
- MarkerTransport: serial-only fallback; output is cut out of the console
  stream between unique markers.

All three borrow sessions from one SessionRegistry and draw ids from the
bridge's counter, so ids never collide across transports.
"""

import codecs
import logging
from dataclasses import dataclass, field

import anyio

from guestsh_bridge import ChannelBridge
from guestsh_commands import (
    fifo_write_commands,
    file_write_commands,
    gen_token,
    job_command,
    marker,
    marker_command,
    parse_marker_output,
    remove_command,
    stop_stream_command,
    stream_command,
)
from guestsh_config import STREAM_CHUNK_BYTES
from guestsh_errors import FilesystemUnavailable, NotFound

log = logging.getLogger("guestsh.transport")

JOB_SUFFIXES = ("in", "out", "exit", "exit.part", "cwd")
STREAM_SUFFIXES = ("fifo", "out", "exit", "pid", "cwd")


# ============================================================================
# Sessions
# ============================================================================

@dataclass
class Session:
    """One caller's shell context inside the guest."""
    tag: str
    work_dir: str
    cwd: str = "/"

    @property
    def cwd_file(self) -> str:
        return f"{self.work_dir}/cwd"


class SessionRegistry:
    """Sessions keyed by caller tag. At most one per tag."""

    def __init__(self, bridge: ChannelBridge):
        self.bridge = bridge
        self._sessions: dict[str, Session] = {}
        self._lock = anyio.Lock()

    def __contains__(self, tag: str) -> bool:
        return tag in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, tag: str) -> Session | None:
        return self._sessions.get(tag)

    def cwd(self, tag: str) -> str:
        session = self._sessions.get(tag)
        return session.cwd if session else "/"

    async def get_or_create(self, tag: str) -> Session:
        async with self._lock:
            session = self._sessions.get(tag)
            if session is None:
                work_dir = f"{self.bridge.scratch_dir}/sh{self.bridge.next_id()}"
                await self.bridge.send_text(f"mkdir -p {work_dir} && echo / > {work_dir}/cwd\n")
                session = Session(tag, work_dir)
                self._sessions[tag] = session
                log.info("created shell %s for %s", work_dir, tag)
            return session

    async def destroy(self, tag: str) -> None:
        async with self._lock:
            session = self._sessions.pop(tag, None)
            if session is None:
                return
            await self.bridge.send_text(f"rm -rf {session.work_dir}\n")
            log.info("destroyed shell for %s", tag)

    def update_cwd(self, tag: str, cwd: str) -> None:
        session = self._sessions.get(tag)
        if session is not None and cwd:
            session.cwd = cwd


# ============================================================================
# Active jobs and streams
# ============================================================================

@dataclass
class ActiveJob:
    """Bookkeeping shared by jobs and streams."""
    id: str
    session_tag: str
    bytes_read: int = 0
    stream: bool = False
    _decoder: codecs.IncrementalDecoder = field(
        default_factory=lambda: codecs.getincrementaldecoder("utf-8")(errors="replace"),
        repr=False,
    )

    def decode(self, data: bytes, final: bool = False) -> str:
        return self._decoder.decode(data, final)


@dataclass
class Job(ActiveJob):
    """One-shot command in flight."""
    done: bool = False
    exit_code: int | None = None
    cwd: str = "/"


@dataclass
class Stream(ActiveJob):
    """FIFO-fed command that runs until stopped."""
    stream: bool = True


@dataclass
class JobStatus:
    """Result of one poll. new_output holds only what arrived since the last poll."""
    new_output: str
    done: bool
    exit_code: int | None
    cwd: str


class FileTransport:
    """Common ground of the file-based transports."""

    def __init__(self, bridge: ChannelBridge, sessions: SessionRegistry, active: dict[str, ActiveJob]):
        self.bridge = bridge
        self.sessions = sessions
        self.active = active

    def _require_filesystem(self) -> None:
        if not self.bridge.filesystem_ready:
            raise FilesystemUnavailable("shared directory is not mounted")

    def _host(self, job_id: str, suffix: str) -> str:
        return self.bridge.host_path(f"{job_id}_{suffix}")

    def _guest(self, job_id: str, suffix: str) -> str:
        return self.bridge.guest_path(f"{job_id}_{suffix}")

    async def _read_text(self, path: str) -> str | None:
        try:
            data = await self.bridge.read_file(path)
        except NotFound:
            return None
        return data.decode("utf-8", errors="replace").strip()

    async def _read_delta(self, job: ActiveJob) -> str:
        """Decode output bytes past job.bytes_read and advance it."""
        path = self._host(job.id, "out")
        try:
            data = await self.bridge.read_file(path)
        except NotFound:
            return ""
        except OSError as e:
            log.warning("reading %s failed: %s", path, e)
            return ""
        if len(data) <= job.bytes_read:
            return ""
        new = data[job.bytes_read:]
        job.bytes_read = len(data)
        return job.decode(new)

    async def cleanup_job(self, job_id: str) -> None:
        """Forget a job or stream and delete its guest files. Safe to repeat."""
        job = self.active.pop(job_id, None)
        if job is None:
            return
        suffixes = STREAM_SUFFIXES if job.stream else JOB_SUFFIXES
        await self.bridge.send_text(remove_command([self._guest(job_id, s) for s in suffixes]) + "\n")
        log.debug("cleaned up %s", job_id)


# ============================================================================
# JobTransport
# ============================================================================

class JobTransport(FileTransport):
    """One-shot commands: input file in, output/exit/cwd files out."""

    async def start_job(self, tag: str, cmd: str, stdin: str | bytes | None = None) -> str:
        """Launch cmd in the background. Empty stdin counts as no stdin."""
        self._require_filesystem()
        session = await self.sessions.get_or_create(tag)
        job = Job(id=f"j{self.bridge.next_id()}", session_tag=tag, cwd=session.cwd)

        # Empty output file up front so the first poll reads b"" instead of NotFound
        await self.bridge.create_file(self._host(job.id, "out"), b"")
        stdin_file = None
        if stdin:
            data = stdin.encode() if isinstance(stdin, str) else stdin
            await self.bridge.create_file(self._host(job.id, "in"), data)
            stdin_file = self._guest(job.id, "in")

        self.active[job.id] = job
        line = job_command(
            cmd,
            cwd=session.cwd,
            out=self._guest(job.id, "out"),
            exit_file=self._guest(job.id, "exit"),
            cwd_file=self._guest(job.id, "cwd"),
            session_cwd_file=session.cwd_file,
            stdin_file=stdin_file,
        )
        await self.bridge.send_text(line + "\n")
        log.info("started job %s for %s: %s", job.id, tag, cmd[:60])
        return job.id

    async def poll_job(self, job_id: str) -> JobStatus:
        """New output since the last poll, plus completion once the exit file exists."""
        job = self.active.get(job_id)
        if not isinstance(job, Job):
            return JobStatus("", True, None, "/")

        new_output = await self._read_delta(job)
        if job.done:
            return JobStatus(new_output, True, job.exit_code, job.cwd)

        exit_text = await self._read_text(self._host(job.id, "exit"))
        if exit_text is None:
            return JobStatus(new_output, False, None, job.cwd)

        job.done = True
        try:
            job.exit_code = int(exit_text)
        except ValueError:
            log.warning("job %s: unreadable exit status %r", job.id, exit_text)

        cwd = await self._read_text(self._host(job.id, "cwd"))
        if cwd:
            job.cwd = cwd
            self.sessions.update_cwd(job.session_tag, cwd)

        # Output may have grown between the first read and the exit file appearing
        new_output += await self._read_delta(job)
        new_output += job.decode(b"", final=True)
        log.debug("job %s done (exit %s)", job.id, job.exit_code)
        return JobStatus(new_output, True, job.exit_code, job.cwd)


# ============================================================================
# StreamTransport
# ============================================================================

class StreamTransport(FileTransport):
    """Persistent commands fed through a FIFO."""

    def __init__(self, *args, line_buffered: bool = True, chunk_size: int = STREAM_CHUNK_BYTES):
        super().__init__(*args)
        self.line_buffered = line_buffered
        self.chunk_size = chunk_size

    async def start_stream(self, tag: str, cmd: str) -> str:
        self._require_filesystem()
        session = await self.sessions.get_or_create(tag)
        stream = Stream(id=f"s{self.bridge.next_id()}", session_tag=tag)

        await self.bridge.create_file(self._host(stream.id, "out"), b"")
        self.active[stream.id] = stream

        line = stream_command(
            cmd,
            cwd=session.cwd,
            fifo=self._guest(stream.id, "fifo"),
            out=self._guest(stream.id, "out"),
            exit_file=self._guest(stream.id, "exit"),
            cwd_file=self._guest(stream.id, "cwd"),
            pid_file=self._guest(stream.id, "pid"),
            session_cwd_file=session.cwd_file,
            line_buffered=self.line_buffered,
        )
        await self.bridge.send_text(line + "\n")
        log.info("started stream %s for %s: %s", stream.id, tag, cmd[:60])
        return stream.id

    async def write_to_stream(self, stream_id: str, text: str | bytes) -> bool:
        """Push bytes into the stream's FIFO. False if there is no such stream."""
        stream = self.active.get(stream_id)
        if stream is None or not stream.stream:
            log.debug("write to %s ignored, no such stream", stream_id)
            return False
        fifo = self._guest(stream_id, "fifo")
        for line in fifo_write_commands(fifo, text, self.chunk_size):
            await self.bridge.send_text(line + "\n")
        return True

    async def read(self, stream_id: str) -> str:
        stream = self.active.get(stream_id)
        if stream is None or not stream.stream:
            return ""
        return await self._read_delta(stream)

    async def stop_stream(self, stream_id: str) -> None:
        """Kill the stream's process and delete its files. Does not wait."""
        stream = self.active.pop(stream_id, None)
        if stream is None:
            return
        files = [self._guest(stream_id, s) for s in STREAM_SUFFIXES]
        await self.bridge.send_text(stop_stream_command(self._guest(stream_id, "pid"), files) + "\n")
        log.info("stopped stream %s", stream_id)


# ============================================================================
# MarkerTransport
# ============================================================================

@dataclass
class PendingRead:
    """Console text collected for one marker request."""
    end_marker: str
    output: str = ""
    finished: anyio.Event = field(default_factory=anyio.Event)

    @property
    def done(self) -> bool:
        return self.finished.is_set()

    def feed(self, text: str) -> None:
        if self.done:
            return
        self.output += text
        at = self.output.find(self.end_marker)
        if at >= 0 and "\n" in self.output[at:]:
            self.finished.set()


@dataclass
class ExecResult:
    """Outcome of a blocking execute. timed_out means the output may be truncated."""
    output: str
    cwd: str
    exit_code: int | None = None
    timed_out: bool = False


class MarkerTransport:
    """Serial-only execution, used when the shared directory is unavailable."""

    def __init__(self, bridge: ChannelBridge, sessions: SessionRegistry, chunk_size: int = STREAM_CHUNK_BYTES):
        self.bridge = bridge
        self.sessions = sessions
        self.chunk_size = chunk_size
        self.pending: dict[str, PendingRead] = {}

    async def execute(
        self,
        tag: str,
        cmd: str,
        stdin: str | bytes | None = None,
        timeout: float = 10.0,
    ) -> ExecResult:
        session = await self.sessions.get_or_create(tag)
        token = f"{gen_token()}{self.bridge.next_id()}"
        pending = PendingRead(end_marker=marker("C", token))
        self.pending[token] = pending
        self.bridge.add_listener(token, pending.feed)

        # Input goes to a file first, in lines short enough for a tty
        writes: list[str] = []
        stdin_file = None
        if stdin:
            stdin_file = f"{session.work_dir}/in_{token}"
            writes = file_write_commands(stdin_file, stdin, self.chunk_size)
        line = marker_command(
            cmd, token, cwd=session.cwd, session_cwd_file=session.cwd_file, stdin_file=stdin_file,
        )
        log.debug("marker exec %s for %s: %s", token, tag, cmd[:60])
        try:
            for write in writes:
                await self.bridge.send_text(write + "\n")
            await self.bridge.send_text(line + "\n")
            with anyio.move_on_after(timeout):
                await pending.finished.wait()
        finally:
            self.bridge.remove_listener(token)
            self.pending.pop(token, None)

        if not pending.done:
            log.warning("marker exec %s timed out after %ss", token, timeout)

        output, exit_code, cwd = parse_marker_output(pending.output, token)
        if cwd:
            self.sessions.update_cwd(tag, cwd)
        return ExecResult(output, cwd or session.cwd, exit_code, not pending.done)
