"""Status definitions and exceptions for PresetLibrary.

This module provides:
    - Status: enumeration of possible storage outcomes
    - STATUS_MESSAGE: user-facing messages for each status
    - get_message: retrieve the message for a status
    - BaseStatusException: base exception carrying a Status
    - Specific exceptions (e.g., PresetNotFoundException) for error handling in the repository
"""
import enum
import logging
from typing import Dict


class Status(enum.StrEnum):
    """Enumeration of storage status codes."""
    UnknownStatus = enum.auto()
    Okay = enum.auto()

    # Lookup status
    NotFound = enum.auto()

    # Storage status
    IOFailure = enum.auto()
    SerializationFailure = enum.auto()

    # Device capabilities
    Unavailable = enum.auto()

    # Input status
    InvalidPreset = enum.auto()
    ManifestInvalid = enum.auto()


STATUS_MESSAGE: Dict[Status, str] = {
    Status.UnknownStatus: 'Unknown status.',
    Status.Okay: 'Everything is okay.',

    Status.NotFound: 'The requested preset or collection could not be found.',

    Status.IOFailure: 'Could not read or write preset storage.',
    Status.SerializationFailure: 'The stored preset data is corrupt and could not be read.',

    Status.Unavailable: 'This feature is not available on the current device.',

    Status.InvalidPreset: 'The preset is incomplete, or contains invalid values.',
    Status.ManifestInvalid: 'The bundled preset manifest is missing, incomplete, or contains invalid values.',
}


def get_message(status: Status) -> str:
    """
    Get the message for a given status.

    Args:
        status (Status): The status enum.

    Returns:
        str: The message associated with the status.
    """
    return STATUS_MESSAGE.get(status, 'Unknown status')


class BaseStatusException(Exception):
    """Base exception for status-based errors in PresetLibrary.

    Attributes:
        status (Status): Status code associated with this error.
        status_message (str): User-facing message for the status.

    Args:
        message (str): Optional additional context for the error.
    """
    status = Status.UnknownStatus

    def __init__(self, message: str = None):
        self.status_message = get_message(self.status)
        exception_message = f'{self.status_message} {message}' if message else self.status_message
        super().__init__(exception_message)

        logging.error(exception_message)

        from ..core.signals import signals
        signals.error.emit(message or self.status_message)


class UnknownException(BaseStatusException):
    """Exception for an unknown error during status processing."""
    pass


class PresetNotFoundException(BaseStatusException):
    """Exception raised when an id has no entry in the metadata table."""
    status = Status.NotFound


class CollectionNotFoundException(BaseStatusException):
    """Exception raised when a collection id is unknown."""
    status = Status.NotFound


class IOFailureException(BaseStatusException):
    """Exception raised when a file or database read/write fails."""
    status = Status.IOFailure


class ContentMissingException(IOFailureException):
    """Exception raised when a preset has metadata but its content blob is missing."""
    pass


class SerializationFailureException(BaseStatusException):
    """Exception raised when a stored record cannot be parsed back into a preset."""
    status = Status.SerializationFailure


class ShareUnavailableException(BaseStatusException):
    """Exception raised when the system share surface is not present on the device."""
    status = Status.Unavailable


class InvalidPresetException(BaseStatusException):
    """Exception raised when a preset is missing required values or its id is not a valid file name."""
    status = Status.InvalidPreset


class ManifestInvalidException(BaseStatusException):
    """Exception raised when the bundled preset manifest is missing or malformed."""
    status = Status.ManifestInvalid
