"""Recording and replaying the outputs of external dependency calls."""

from __future__ import annotations

import logging
import pickle
from collections.abc import Mapping
from typing import Any

from .errors import KeployError, StateError
from .mocks import MOCK_IDS, get_mock_client, get_mock_path, put_mock
from .mode import Context, Mode, get_state
from .models import MOCK_VERSION, Dependency, Kind, Mock, MockObject, MockSpec

logger = logging.getLogger("keploy")

_ENCODE_ERRORS = (pickle.PicklingError, TypeError, AttributeError)
_DECODE_ERRORS = (
    pickle.UnpicklingError,
    EOFError,
    ValueError,
    TypeError,
    AttributeError,
    ImportError,
    IndexError,
    KeployError,
)


def encode(obj: Any) -> bytes | None:
    """Serialise obj to bytes; None encodes to None."""
    if obj is None:
        return None
    return pickle.dumps(obj)


def decode(data: bytes | None) -> Any:
    """Rebuild an object serialised by encode; empty data decodes to None."""
    if not data:
        return None
    return pickle.loads(data)


def _type_name(obj: Any) -> str:
    return type(obj).__qualname__


def _decode_all(blobs: list[bytes | None], test_id: str) -> list[Any] | None:
    try:
        return [decode(blob) for blob in blobs]
    except _DECODE_ERRORS as exc:
        logger.error(
            "dependency mocking failed: failed to decode object (test id %s): %s", test_id, exc
        )
        return None


def _replay(kctx: Context, meta: Mapping[str, str], count: int) -> list[Any] | None:
    with kctx.lock:
        if not kctx.mock:
            if not kctx.deps:
                logger.error(
                    "dependency mocking failed: New unrecorded dependency call. "
                    "Please record again and delete current tcs with test id %s",
                    kctx.test_id,
                )
                return None
            dep = kctx.deps[0]
            if len(dep.data) != count:
                logger.error(
                    "dependency mocking failed: Async or Unrecorded dependency call. "
                    "Please record again and delete current tcs with test id %s",
                    kctx.test_id,
                )
                return None
            values = _decode_all(dep.data, kctx.test_id)
            if values is None:
                return None
            del kctx.deps[0]
            return values

        mock = kctx.mock[0]
        objects = mock.spec.objects
        if len(objects) != count:
            logger.error(
                "mocking failed: Async or Unrecorded dependency call. "
                "Please record again and delete current tcs with test id %s",
                kctx.test_id,
            )
            return None
        values = _decode_all([obj.data for obj in objects], kctx.test_id)
        if values is None:
            return None
        if kctx.file_export:
            logger.info("Returned the mocked outputs for Generic dependency call with meta: %s", meta)
        del kctx.mock[0]
        return values


def _record(kctx: Context, meta: Mapping[str, str], outputs: tuple[Any, ...]) -> None:
    try:
        encoded = [encode(output) for output in outputs]
    except _ENCODE_ERRORS as exc:
        logger.error(
            "dependency capture failed: failed to encode object (test id %s): %s",
            kctx.test_id,
            exc,
        )
        return
    objects = [
        MockObject(type=_type_name(output), data=data) for output, data in zip(outputs, encoded)
    ]
    if get_mock_client() is not None and kctx.file_export and MOCK_IDS.unique(kctx.test_id):
        recorded = put_mock(
            get_mock_path(),
            Mock(
                version=MOCK_VERSION,
                kind=Kind.GENERIC.value,
                name=kctx.test_id,
                spec=MockSpec(metadata=dict(meta), objects=objects),
            ),
        )
        if recorded:
            logger.info("Captured the mocked outputs for Generic dependency call with meta: %s", meta)
        return

    with kctx.lock:
        kctx.deps.append(
            Dependency(
                name=meta.get("name", ""),
                type=meta.get("type", ""),
                data=encoded,
                meta=dict(meta),
            )
        )
        kctx.mock.append(
            Mock(
                version=MOCK_VERSION,
                kind=Kind.GENERIC.value,
                name="",
                spec=MockSpec(metadata=dict(meta), objects=list(objects)),
            )
        )


def process_dep(meta: Mapping[str, str], *args: Any) -> list[Any] | None:
    """Record or replay the outputs of a dependency call.

    In test mode the recorded outputs are returned, one for each argument
    given. In record mode the arguments are stored in the bound context and
    None is returned. None is also returned when nothing can be replayed.
    """
    try:
        kctx = get_state()
    except StateError as exc:
        logger.error("dependency mocking failed: failed to get Keploy state from context: %s", exc)
        return None
    if kctx.mode == Mode.TEST:
        return _replay(kctx, meta, len(args))
    if kctx.mode == Mode.RECORD:
        _record(kctx, meta, args)
    return None