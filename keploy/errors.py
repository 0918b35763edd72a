"""Exceptions of the SDK and the encodable wrapper for recorded errors."""

from __future__ import annotations

from typing import Any

_VERSION = 1


class KeployError(Exception):
    """Base class of errors raised by the SDK."""


class StateError(KeployError):
    """No keploy context is bound to the current call."""

    def __init__(self, message: str = "failed to get Keploy context") -> None:
        super().__init__(message)


class InvalidModeError(KeployError, ValueError):
    """An unknown SDK mode was requested."""


class _DriverError(KeployError):
    default_message = ""

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)


class BadConnectionError(_DriverError):
    """The database connection is unusable."""

    default_message = "driver: bad connection"


class RemoveArgumentError(_DriverError):
    """The driver asks for an argument to be dropped from the query."""

    default_message = "driver: remove argument from query"


class SkipError(_DriverError):
    """The fast path is not available; fall back to the slow one."""

    default_message = "driver: skip fast-path; continue as if unimplemented"


class EndOfRows(_DriverError):
    """No more rows are available."""

    default_message = "EOF"


_KNOWN_ERRORS = {
    cls.default_message: cls
    for cls in (BadConnectionError, RemoveArgumentError, SkipError, EndOfRows)
}


class KError:
    """Holds an error (or none) so that it can be recorded and replayed."""

    def __init__(self, err: BaseException | None = None) -> None:
        self.err = err

    def __str__(self) -> str:
        return "" if self.err is None else str(self.err)

    def __repr__(self) -> str:
        return f"KError({self.err!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, KError):
            return NotImplemented
        if self.err is None or other.err is None:
            return self.err is None and other.err is None
        return str(self.err) == str(other.err)

    __hash__ = None  # type: ignore[assignment]

    def __reduce__(self) -> tuple[Any, ...]:
        return (KError.decode, (self.encode(),))

    def encode(self) -> bytes:
        """Return a version byte followed by the UTF-8 error message."""
        message = b"" if self.err is None else str(self.err).encode("utf-8")
        return bytes([_VERSION]) + message

    @classmethod
    def decode(cls, data: bytes) -> KError:
        """Rebuild a KError from bytes made by encode."""
        if not data or data[0] != _VERSION:
            raise KeployError("gob decode of errors.errorString failed: unsupported version")
        if len(data) == 1:
            return cls(None)
        return cls(KeployError(data[1:].decode("utf-8")))


def convert_kerror(err: BaseException | KError | str | None) -> BaseException | None:
    """Map a recorded error back to the driver error with the same message.

    The text "nil" stands for no error. Unknown exceptions are returned
    unchanged; unknown texts become a KeployError.
    """
    if isinstance(err, KError):
        err = err.err
    if err is None:
        return None
    text = err if isinstance(err, str) else str(err)
    if text == "nil":
        return None
    known = _KNOWN_ERRORS.get(text)
    if known is not None:
        return known()
    if isinstance(err, str):
        return KeployError(err)
    return err