"""Error taxonomy shared by the controller subsystems."""

from __future__ import annotations

from typing import Optional


class ControllerError(Exception):
    """Base class for controller errors surfaced to callers."""


class ValidationError(ControllerError, ValueError):
    """Rejected input; raised before any record is written."""


class NotFoundError(ControllerError, LookupError):
    """A referenced device, room, preset or routine does not exist."""


class TransportError(ControllerError, RuntimeError):
    """A device could not be reached or rejected a command."""

    def __init__(self, device_id: str, cause: str) -> None:
        super().__init__(f"{device_id}: {cause}")
        self.device_id = device_id
        self.cause = cause


class ParseError(ControllerError, ValueError):
    """A spectral profile document is missing or has a malformed section."""

    def __init__(self, section: str, detail: Optional[str] = None) -> None:
        message = f"Invalid profile section '{section}'"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.section = section
        self.detail = detail
