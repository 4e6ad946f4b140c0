from __future__ import annotations


class PracticeRoomError(Exception):
    """Base error for the practiceroom library."""


class InvalidConfigError(PracticeRoomError):
    """Raised when a setting or argument is out of range."""


class AcquisitionFailedError(PracticeRoomError):
    """Raised when the microphone or audio output cannot be opened."""


class DecodeFailedError(PracticeRoomError):
    """Raised when a sound asset cannot be loaded or decoded."""


class InvalidStateError(PracticeRoomError):
    """Raised when an operation is not valid in the component's current state."""


class ClickTrackBusyError(InvalidStateError):
    """Raised when a click track request arrives while a sound switch is in flight."""
