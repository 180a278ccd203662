"""Typed failures raised by the harness transport and capture layers."""

from __future__ import annotations


class HarnessError(RuntimeError):
    """Base class for every harness failure."""


class ConnectionFailed(HarnessError):
    """Bind, connect, read or write on the harness socket failed."""


class HarnessTimeout(HarnessError):
    """No response arrived within the allotted time.

    The application should be treated as unresponsive for that one operation,
    not as crashed.
    """


class RenderTimeout(HarnessTimeout):
    """The application did not finish rendering within its deadline."""


class UnexpectedResponse(HarnessError):
    """A response decoded but its status or payload was not what the caller required."""


class UnknownCommand(HarnessError):
    def __init__(self, tag: str) -> None:
        super().__init__(f"unknown command: {tag}")
        self.tag = tag


class CommandDecodeError(HarnessError):
    """A framed line could not be decoded into a command."""


class CaptureFailed(HarnessError):
    """The capture collaborator produced no usable image or pixel data."""
