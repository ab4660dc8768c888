"""
Timing constants, guest paths and the per-machine configuration.

The defaults are tuned for a small Alpine guest on a slow emulator; a local
shell or a KVM guest can use much shorter delays.
"""

from dataclasses import dataclass, field

# ============================================================================
# Constants
# ============================================================================

# Timing (seconds)
BOOT_TIMEOUT = 120.0
SNAPSHOT_SETTLE_DELAY = 1.0
LOGIN_SEND_DELAY = 0.5
SHELL_CONFIG_DELAY = 0.5
CMD_STEP_DELAY = 0.1
NETWORK_DELAY = 2.0
MARKER_TIMEOUT = 30.0

POLL_INTERVAL = 0.05
EXEC_TIMEOUT = 10.0
PIPE_TIMEOUT = 15.0

# Serial prompts that indicate boot stages
LOGIN_PROMPTS = ("Files send via emulator", "localhost login:")
SHELL_PROMPTS = ("/ #", "~%", "# ", "localhost:~#")

# Serial buffer limits (characters)
SERIAL_BUF_MAX = 50_000
SERIAL_BUF_TRIM = 25_000

# Guest-only scratch space; session work dirs live here
GUEST_BASE = "/tmp/guestsh"
# Job and stream files, relative to the shared directory root
JOBS_DIR = "jobs"

# Bytes of stream input per injected printf line
STREAM_CHUNK_BYTES = 256
# Canonical-mode tty line limit; longer injected lines get cut
TTY_LINE_MAX = 4095

DEFAULT_SESSION = "_default"


@dataclass
class MachineConfig:
    """Knobs for one machine. Every field defaults to the constant above."""
    boot_timeout: float = BOOT_TIMEOUT
    settle_delay: float = SNAPSHOT_SETTLE_DELAY
    login_send_delay: float = LOGIN_SEND_DELAY
    shell_config_delay: float = SHELL_CONFIG_DELAY
    step_delay: float = CMD_STEP_DELAY
    network_delay: float = NETWORK_DELAY
    marker_timeout: float = MARKER_TIMEOUT

    poll_interval: float = POLL_INTERVAL
    exec_timeout: float = EXEC_TIMEOUT
    pipe_timeout: float = PIPE_TIMEOUT

    login_prompts: tuple[str, ...] = LOGIN_PROMPTS
    shell_prompts: tuple[str, ...] = SHELL_PROMPTS
    serial_buf_max: int = SERIAL_BUF_MAX
    serial_buf_trim: int = SERIAL_BUF_TRIM

    scratch_dir: str = GUEST_BASE
    # False forces serial-marker mode even when a share is configured
    use_filesystem: bool = True
    network: bool = False
    # Run stream commands under `stdbuf -oL` so filters flush per line
    stream_line_buffered: bool = True
    extra_setup: list[str] = field(default_factory=list)
