"""SDK mode and the per-request keploy context."""

from __future__ import annotations

import logging
import os
import threading
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from enum import Enum

from .errors import InvalidModeError, StateError
from .models import Dependency, Mock

logger = logging.getLogger("keploy")


class Mode(str, Enum):
    """Mode in which the SDK operates."""

    RECORD = "record"
    TEST = "test"
    OFF = "off"


@dataclass
class Context:
    """State of one request: its mode, test id and recorded dependencies."""

    mode: Mode
    test_id: str = ""
    file_export: bool = False
    deps: list[Dependency] = field(default_factory=list)
    mock: list[Mock] = field(default_factory=list)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)


_mode = Mode.OFF
_current: ContextVar[Context | None] = ContextVar("keploy_context", default=None)


def get_mode() -> Mode:
    """Return the global SDK mode."""
    return _mode


def set_mode(mode: Mode | str) -> None:
    """Set the global SDK mode; raise InvalidModeError for unknown modes."""
    global _mode
    try:
        _mode = Mode(mode)
    except ValueError:
        raise InvalidModeError(f"invalid mode: {mode}") from None


def set_test_mode() -> None:
    """Switch the SDK to test mode."""
    set_mode(Mode.TEST)


def init_from_env(environ: Mapping[str, str] | None = None) -> Mode:
    """Set the mode from KEPLOY_MODE, warning on an invalid value."""
    env = os.environ if environ is None else environ
    value = env.get("KEPLOY_MODE", "")
    if value:
        try:
            set_mode(value)
        except InvalidModeError as exc:
            logger.warning("warning: %s", exc)
    return get_mode()


def get_state() -> Context:
    """Return the keploy context bound to the current call."""
    ctx = _current.get()
    if ctx is None:
        raise StateError()
    return ctx


def get_mode_from_context() -> Mode:
    """Return the mode of the bound context, or OFF when none is bound."""
    try:
        return Mode(get_state().mode)
    except StateError:
        return Mode.OFF


@contextmanager
def bind_context(ctx: Context) -> Iterator[Context]:
    """Bind ctx as the current keploy context for the duration of the block."""
    token = _current.set(ctx)
    try:
        yield ctx
    finally:
        _current.reset(token)


init_from_env()