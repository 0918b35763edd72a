"""Shared mock-export state: the client, the mock path and exported test ids."""

from __future__ import annotations

import logging
import threading
from typing import Any, Protocol

from .models import Mock

logger = logging.getLogger("keploy")


class _MockClient(Protocol):
    def put_mock(self, path: str, mock: Mock) -> Any: ...


class MockIds:
    """Thread-safe set of test ids whose mocks were already exported."""

    def __init__(self) -> None:
        self._ids: set[str] = set()
        self._lock = threading.Lock()

    def unique(self, name: str) -> bool:
        """Return True if name has not been loaded yet."""
        with self._lock:
            return name not in self._ids

    def load(self, name: str) -> None:
        """Mark name as exported."""
        with self._lock:
            self._ids.add(name)


class _ExportState:
    """Holds the mock directory and client behind a lock."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._path = ""
        self._client: _MockClient | None = None

    def set_path(self, path: str) -> None:
        with self._lock:
            self._path = path

    def path(self) -> str:
        with self._lock:
            return self._path

    def set_client(self, client: _MockClient | None) -> None:
        with self._lock:
            self._client = client

    def client(self) -> _MockClient | None:
        with self._lock:
            return self._client


MOCK_IDS = MockIds()

_STATE = _ExportState()


def set_mock_path(path: str) -> None:
    """Set the directory where exported mocks are written."""
    _STATE.set_path(path)


def get_mock_path() -> str:
    """Return the directory where exported mocks are written."""
    return _STATE.path()


def set_mock_client(client: _MockClient | None) -> None:
    """Set the client used to export mocks, or None to disable export."""
    _STATE.set_client(client)


def get_mock_client() -> _MockClient | None:
    """Return the client used to export mocks."""
    return _STATE.client()


def put_mock(path: str, mock: Mock) -> bool:
    """Export mock through the client; return whether it succeeded."""
    client = _STATE.client()
    if client is None:
        logger.error("Failed to call the putMock method: no mock client set")
        return False
    try:
        client.put_mock(path, mock)
    except Exception as exc:  # the client may fail in any way
        logger.error("Failed to call the putMock method: %s", exc)
        return False
    return True