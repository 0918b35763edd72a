"""Transactions and execution results whose outcomes are recorded and replayed."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from ..deps import process_dep
from ..errors import KError, KeployError, StateError, convert_kerror
from ..mode import Context, Mode, bind_context, get_state
from ..models import ERR_TYPE, SQL_DB
from .recording import SqlOutput, capture_sql_mocks, mock_sql_from_yaml


def _bound_context() -> Context | None:
    try:
        return get_state()
    except StateError:
        return None


def _raise_recorded(err: Any) -> None:
    converted = convert_kerror(err)
    if converted is not None:
        raise converted


@dataclass
class Result:
    """Outcome of an executed statement; error texts are "nil" for none."""

    last_inserted: int = 0
    l_error: str = "nil"
    rows_aff: int = 0
    r_error: str = "nil"

    def last_insert_id(self) -> int:
        """Return the last inserted id, or raise the recorded error."""
        _raise_recorded(self.l_error)
        return self.last_inserted

    def rows_affected(self) -> int:
        """Return the number of affected rows, or raise the recorded error."""
        _raise_recorded(self.r_error)
        return self.rows_aff


class Tx:
    """Wraps a driver transaction so that commit and rollback are recorded or replayed.

    The keploy context bound when the transaction is created is used for its calls.
    """

    def __init__(self, tx: Any = None, kctx: Context | None = None) -> None:
        self.tx = tx
        self.kctx = kctx if kctx is not None else _bound_context()

    def commit(self) -> None:
        """Commit, or replay the recorded outcome of the commit."""
        self._finish("BeginTx.Commit", "commit")

    def rollback(self) -> None:
        """Roll back, or replay the recorded outcome of the rollback."""
        self._finish("BeginTx.Rollback", "rollback")

    def _finish(self, operation: str, method: str) -> None:
        kctx = self.kctx
        if kctx is None or kctx.mode == Mode.OFF:
            if self.tx is None:
                raise KeployError(f"no transaction to {method}")
            getattr(self.tx, method)()
            return

        meta = {"name": "SQL", "type": SQL_DB, "operation": operation}
        if kctx.mode == Mode.TEST:
            output = mock_sql_from_yaml(kctx, meta)
            if output is not None and len(output.err) == 1:
                _raise_recorded(output.err[0])
                return
            with bind_context(kctx):
                replayed = process_dep(meta, KError())
            if replayed:
                _raise_recorded(replayed[0])
            return

        if kctx.mode == Mode.RECORD:
            err: Exception | None = None
            if self.tx is not None:
                try:
                    getattr(self.tx, method)()
                except Exception as exc:  # the driver's error is recorded, then re-raised
                    err = exc
            capture_sql_mocks(
                kctx,
                meta,
                ERR_TYPE,
                SqlOutput(err=["nil" if err is None else str(err)]),
                KError(err),
            )
            if err is not None:
                raise err
            return

        raise KeployError("integrations: Not in a valid sdk mode")