"""
Error Handling
==============

Exception hierarchy and fetch error codes shared by the transport layer,
the dialog engine, the repository store and the device table.

Features:
- Fetch error codes emitted verbatim in logs and error logs
- Exception classes per failure domain
- Error classification helper mapping exceptions to fetch codes
"""

import logging
from enum import Enum
from typing import Optional

# Configure logging
logger = logging.getLogger(__name__)


class FetchErrorCode(Enum):
    """Stage at which a device fetch stopped."""
    NONE = 0
    GETDEV = 1
    TRANSPORT = 2
    LOGIN = 3
    ENABLE = 4
    PAGER = 5
    COMMANDS = 6
    SAVE = 7

    def __str__(self) -> str:
        return self.name


class ArchiverError(Exception):
    """Base class for all archiver errors."""


class TransportError(ArchiverError):
    """No transport variant could connect."""


class TelnetNegotiationOnly(ArchiverError):
    """A TELNET read returned only option negotiation, no payload."""


class MatchError(ArchiverError):
    """Pattern matching on the device stream failed."""


class MatchTimeout(MatchError):
    """The overall match deadline expired."""


class ReadTimeout(MatchError):
    """A single read hit its deadline."""


class UnexpectedEOF(MatchError):
    """The device closed the stream while a prompt was expected."""


class StoreError(ArchiverError):
    """Repository operation failed."""


class DeviceTableError(ArchiverError):
    """Device table operation failed."""


class DeviceNotFound(DeviceTableError):
    """Device id not present in the table."""


class DeviceExists(DeviceTableError):
    """Device id already present in the table."""


class ModelNotFound(DeviceTableError):
    """Model name not registered."""


class ModelExists(DeviceTableError):
    """Model name registered twice."""


class ConfigError(ArchiverError):
    """Config file could not be parsed or loaded."""


class DeviceRecordError(ArchiverError):
    """Device text record could not be parsed."""


class ErrorClassifier:
    """Maps exceptions raised during a fetch to fetch error codes."""

    @staticmethod
    def classify_error(exception: Exception,
                       default: FetchErrorCode = FetchErrorCode.COMMANDS) -> FetchErrorCode:
        """Return the fetch error code for an exception."""
        if isinstance(exception, TransportError):
            return FetchErrorCode.TRANSPORT
        if isinstance(exception, StoreError):
            return FetchErrorCode.SAVE
        if isinstance(exception, DeviceNotFound):
            return FetchErrorCode.GETDEV
        return default

    @staticmethod
    def describe(exception: Optional[BaseException]) -> str:
        """Short one-line description for logs."""
        if exception is None:
            return ""
        text = str(exception)
        if not text:
            return type(exception).__name__
        return text.replace("\n", " ")
