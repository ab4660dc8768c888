"""
Guest command lines.

Everything the host asks of the guest is one line of shell text typed into
the serial console. These helpers build those lines; they never talk to the
machine themselves.
"""

import random
import shlex
import string

MARKER_PREFIX = "__GSH_"


def encode_hex(data: str | bytes) -> str:
    """Escape every byte as \\xHH for `printf '%b'`."""
    if isinstance(data, str):
        data = data.encode()
    return "".join(f"\\x{b:02x}" for b in data)


def gen_token() -> str:
    """Random base36 token like 'k3x9q0a7zm1b'."""
    return "".join(random.choices(string.ascii_lowercase + string.digits, k=12))


def marker(kind: str, token: str) -> str:
    """The marker text as it appears in guest output."""
    return f"{MARKER_PREFIX}{kind}_{token}"


def echo_marker(kind: str, token: str, suffix: str = "") -> str:
    """`echo` that prints marker(kind, token).

    The prefix is quoted apart from the rest so the literal marker never
    occurs in the command line itself, even if the console echoes it back.
    """
    return f"echo '{MARKER_PREFIX}'{kind}_{token}{suffix}"


def cd_command(cwd: str) -> str:
    return f"cd {shlex.quote(cwd or '/')} 2>/dev/null || cd /"


def _group(command: str) -> str:
    command = command.rstrip()
    if command.endswith("&"):
        return "{ " + command + " }"
    return "{ " + command.rstrip(";") + "; }"


def job_command(
    command: str,
    *,
    cwd: str,
    out: str,
    exit_file: str,
    cwd_file: str,
    session_cwd_file: str,
    stdin_file: str | None = None,
) -> str:
    """Backgrounded one-shot job writing output, cwd and exit code to files.

    The exit code goes to a temporary file that is renamed last, so the exit
    file appears complete and only after the cwd files are written.
    """
    q = shlex.quote
    run = _group(command)
    if stdin_file:
        run = f"cat {q(stdin_file)} | {run}"
    partial = exit_file + ".part"
    return (
        f"({cd_command(cwd)}; {run} > {q(out)} 2>&1; "
        f"echo $? > {q(partial)}; pwd > {q(cwd_file)}; pwd > {q(session_cwd_file)}; "
        f"mv {q(partial)} {q(exit_file)}) &"
    )


def stream_command(
    command: str,
    *,
    cwd: str,
    fifo: str,
    out: str,
    exit_file: str,
    cwd_file: str,
    pid_file: str,
    session_cwd_file: str,
    line_buffered: bool = False,
) -> str:
    """Backgrounded command fed from a FIFO opened read-write.

    `<>` keeps a writer open on the pipe, so the command never sees EOF
    between writes.
    """
    q = shlex.quote
    run = _group(command)
    if line_buffered:
        # busybox guests have no stdbuf
        run = (
            f"if command -v stdbuf >/dev/null 2>&1; then stdbuf -oL sh -c {q(command)}; "
            f"else {run}; fi"
        )
    return (
        f"mkfifo {q(fifo)}; ({cd_command(cwd)}; {run} <> {q(fifo)} > {q(out)} 2>&1; "
        f"echo $? > {q(exit_file)}; pwd > {q(cwd_file)}; pwd > {q(session_cwd_file)}) & "
        f"echo $! > {q(pid_file)}"
    )


def _printf_lines(data: str | bytes, chunk_size: int, redirect: str) -> list[str]:
    if isinstance(data, str):
        data = data.encode()
    return [
        f"printf '%b' '{encode_hex(data[i:i + chunk_size])}' {redirect}"
        for i in range(0, len(data), chunk_size)
    ]


def fifo_write_commands(fifo: str, data: str | bytes, chunk_size: int) -> list[str]:
    """printf lines that push data into a FIFO, chunk_size bytes per line."""
    return _printf_lines(data, chunk_size, f"> {shlex.quote(fifo)}")


def file_write_commands(path: str, data: str | bytes, chunk_size: int) -> list[str]:
    """Lines that create path in the guest holding data, chunk_size bytes per line."""
    q = shlex.quote(path)
    return [f": > {q}"] + _printf_lines(data, chunk_size, f">> {q}")


def stop_stream_command(pid_file: str, files: list[str]) -> str:
    """Kill the stream's wrapper shell, then its children, then remove its files.

    The wrapper dies first so it cannot write exit or cwd files after the
    removal.
    """
    q = shlex.quote
    return (
        f"p=$(cat {q(pid_file)} 2>/dev/null); "
        f'[ -n "$p" ] && {{ c=$(pgrep -P "$p" 2>/dev/null); kill "$p" 2>/dev/null; kill $c 2>/dev/null; }}; '
        f"rm -f {' '.join(q(f) for f in files)}"
    )


def remove_command(files: list[str]) -> str:
    return "rm -f " + " ".join(shlex.quote(f) for f in files)


def marker_command(
    command: str,
    token: str,
    *,
    cwd: str,
    session_cwd_file: str,
    stdin_file: str | None = None,
) -> str:
    """Foreground command bracketed by start/end/cwd markers on the console.

    Input is read from stdin_file, written beforehand with
    file_write_commands, and removed once the command is done.
    """
    q = shlex.quote
    run = _group(command)
    if stdin_file:
        run = f"cat {q(stdin_file)} | {run}"
    cwd_prefix = f'{MARKER_PREFIX}""C_{token}'
    steps = [
        cd_command(cwd),
        echo_marker("S", token),
        run,
        echo_marker("E", token, ' "$?"'),
    ]
    if stdin_file:
        steps.append(f"rm -f {q(stdin_file)}")
    steps.append(f'pwd | tee {q(session_cwd_file)} | sed "s/^/{cwd_prefix}/"')
    return "; ".join(steps)


def parse_marker_output(raw: str, token: str) -> tuple[str, int | None, str]:
    """Split console text into (output, exit_code, cwd) for one marker request.

    Missing pieces come back empty: '' output, None exit code, '' cwd.
    """
    raw = raw.replace("\r\n", "\n")
    start_m = marker("S", token)
    end_m = marker("E", token)
    cwd_m = marker("C", token)

    output = ""
    exit_code = None
    cwd = ""

    start = raw.find(start_m + "\n")
    if start >= 0:
        body = start + len(start_m) + 1
        end = raw.find(end_m, body)
        if end < 0:
            # Still running: everything after the start marker so far
            output = raw[body:].strip()
        else:
            output = raw[body:end].strip()
            line_end = raw.find("\n", end)
            status = raw[end + len(end_m):line_end if line_end >= 0 else None].strip()
            if status.isdigit():
                exit_code = int(status)

    cwd_at = raw.find(cwd_m)
    if cwd_at >= 0:
        line_end = raw.find("\n", cwd_at)
        cwd = raw[cwd_at + len(cwd_m):line_end if line_end >= 0 else None].strip() or "/"

    return output, exit_code, cwd
