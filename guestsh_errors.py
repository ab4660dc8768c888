"""
Errors raised by guestsh.

Only boot failures and misuse are raised to callers of the execution facade.
Slow or failing guest commands come back as ordinary results.
"""


class GuestError(Exception):
    """Base class for guestsh errors."""


class BootTimeout(GuestError):
    """The guest never reached a usable shell."""


class MarkerTimeout(GuestError):
    """A serial marker did not show up in time."""

    def __init__(self, marker: str, timeout: float):
        super().__init__(f"timed out after {timeout}s waiting for serial marker {marker!r}")
        self.marker = marker
        self.timeout = timeout


class FilesystemUnavailable(GuestError):
    """The shared filesystem channel is not mounted; only serial markers work."""


class NotFound(GuestError):
    """A file does not exist (yet) in the shared directory."""

    def __init__(self, path: str):
        super().__init__(f"no such file in share: {path}")
        self.path = path


class MachineDestroyed(GuestError):
    """The machine was torn down; nothing may be sent to it anymore."""


class UnsupportedOperation(GuestError):
    """The emulator backend cannot do this."""
