"""Recording SQL calls as mocks and replaying them from recorded mocks."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from ..deps import encode
from ..mocks import MOCK_IDS, get_mock_client, get_mock_path, put_mock
from ..mode import Context
from ..models import MOCK_VERSION, Dependency, Kind, Mock, MockSpec, SqlTable

logger = logging.getLogger("keploy")


@dataclass
class SqlOutput:
    """Outputs of one SQL call: a table, a count and error texts ("nil" for none)."""

    table: SqlTable | None = None
    count: int = 0
    err: list[str] = field(default_factory=list)


def _kind(value: Any) -> str:
    return getattr(value, "value", value)


def capture_sql_mocks(
    kctx: Context,
    meta: Mapping[str, str],
    spec_type: str,
    output: SqlOutput,
    *args: Any,
) -> None:
    """Record a SQL call as a mock, and its encoded args as a dependency.

    When mock export is enabled the mock is exported instead of being kept
    in the context.
    """
    sql_mock = Mock(
        version=MOCK_VERSION,
        kind=Kind.SQL.value,
        name=kctx.test_id,
        spec=MockSpec(
            metadata=dict(meta),
            objects=[],
            err=list(output.err),
            type=spec_type,
            table=output.table,
            count=int(output.count),
        ),
    )
    if get_mock_client() is not None and kctx.file_export and MOCK_IDS.unique(kctx.test_id):
        if put_mock(get_mock_path(), sql_mock):
            logger.info("Captured the mocked outputs for SQL dependency call with meta: %s", meta)
        return

    with kctx.lock:
        kctx.mock.append(sql_mock)
    try:
        encoded = [encode(arg) for arg in args]
    except Exception as exc:  # pickling fails in many different ways
        logger.error(
            "dependency capture failed: failed to encode object (test id %s): %s",
            kctx.test_id,
            exc,
        )
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


def mock_sql_from_yaml(kctx: Context, meta: Mapping[str, str]) -> SqlOutput | None:
    """Take the first recorded SQL mock matching meta from the context.

    Returns None when the context's next mock is not a SQL mock, and an
    empty SqlOutput when no SQL mock matches.
    """
    with kctx.lock:
        if not kctx.mock or _kind(kctx.mock[0].kind) != Kind.SQL.value:
            return None
        for index, mock in enumerate(kctx.mock):
            recorded = mock.spec.metadata
            if all(meta.get(key) == recorded.get(key) for key in ("operation", "type", "name")):
                del kctx.mock[index]
                result = SqlOutput(
                    table=mock.spec.table, count=int(mock.spec.count), err=list(mock.spec.err)
                )
                break
        else:
            return SqlOutput()
    if kctx.file_export:
        logger.info("Returned the mocked outputs for SQL dependency call with meta: %s", meta)
    return result