"""Prepared statements whose outcomes are recorded and replayed."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from ..deps import process_dep
from ..errors import KError, KeployError, StateError, convert_kerror
from ..mode import Context, Mode, bind_context, get_state
from ..models import ERR_TYPE, INT_TYPE, SQL_DB
from .recording import SqlOutput, capture_sql_mocks, mock_sql_from_yaml
from .rows import Rows
from .transaction import Result

logger = logging.getLogger("keploy")

_INVALID_MODE = "integrations: Not in a valid sdk mode"


def _bound_context() -> Context | None:
    try:
        return get_state()
    except StateError:
        return None


def _raise_recorded(err: Any) -> None:
    converted = convert_kerror(err)
    if converted is not None:
        raise converted


def _format_args(args: Sequence[Any]) -> str:
    return "[" + " ".join(str(arg) for arg in args) + "]"


def _err_text(err: Exception | None) -> str:
    return "nil" if err is None else str(err)


def _result_of(raw: Any) -> Result:
    recorded = Result()
    try:
        recorded.last_inserted = int(raw.last_insert_id())
    except Exception as exc:  # the driver's error is kept as text
        recorded.l_error = str(exc)
    try:
        recorded.rows_aff = int(raw.rows_affected())
    except Exception as exc:  # the driver's error is kept as text
        recorded.r_error = str(exc)
    return recorded


class Stmt:
    """Wraps a driver's prepared statement so that its calls are recorded or replayed.

    The keploy context bound when the statement is created is used, except
    by the *_context methods, which prefer the context bound at call time.
    """

    def __init__(self, stmt: Any = None, kctx: Context | None = None, query: str = "") -> None:
        self.stmt = stmt
        self.kctx = kctx if kctx is not None else _bound_context()
        self.query = query

    @staticmethod
    def _active(kctx: Context | None) -> Context | None:
        if kctx is None or kctx.mode == Mode.OFF:
            return None
        return kctx

    def _call_context(self) -> Context | None:
        bound = _bound_context()
        return bound if bound is not None else self.kctx

    def _driver(self) -> Any:
        if self.stmt is None:
            raise KeployError("no driver statement")
        return self.stmt

    def _meta(
        self, operation: str, *, with_query: bool = True, args: Sequence[Any] | None = None
    ) -> dict[str, str]:
        meta = {"name": "SQL", "type": SQL_DB, "operation": operation}
        if with_query:
            meta["query"] = f'"{self.query}"'
        if args is not None:
            meta["arguments"] = _format_args(args)
        return meta

    def exec(self, args: Sequence[Any]) -> Any:
        """Execute the statement, or replay its recorded result."""
        kctx = self._active(self.kctx)
        if kctx is None:
            return self._driver().exec(args)
        meta = self._meta("PrepareContext.Exec", args=args)
        if kctx.mode == Mode.TEST:
            with bind_context(kctx):
                replayed = process_dep(meta, Result(), KError())
            if not replayed:
                return None
            _raise_recorded(replayed[1])
            return replayed[0]
        if kctx.mode == Mode.RECORD:
            raw: Any = None
            err: Exception | None = None
            recorded = Result()
            if self.stmt is not None:
                try:
                    raw = self.stmt.exec(args)
                except Exception as exc:  # the driver's error is recorded, then re-raised
                    err = exc
                if raw is not None:
                    recorded = _result_of(raw)
            with bind_context(kctx):
                process_dep(meta, recorded, KError(err))
            if err is not None:
                raise err
            return raw
        raise KeployError(_INVALID_MODE)

    def query(self, args: Sequence[Any]) -> Any:
        """Run the statement as a query and return its rows."""
        kctx = self._active(self.kctx)
        if kctx is None:
            return self._driver().query(args)
        meta = self._meta("PrepareContext.Query", args=args)
        rows = Rows(kctx=kctx, query=self.query)
        if kctx.mode == Mode.TEST:
            with bind_context(kctx):
                replayed = process_dep(meta, KError())
            if replayed:
                _raise_recorded(replayed[0])
            return rows
        if kctx.mode == Mode.RECORD:
            err: Exception | None = None
            if self.stmt is not None:
                try:
                    rows.rows = self.stmt.query(args)
                except Exception as exc:  # the driver's error is recorded, then re-raised
                    err = exc
            with bind_context(kctx):
                process_dep(meta, KError(err))
            if err is not None:
                raise err
            return rows
        raise KeployError(_INVALID_MODE)

    def num_input(self) -> int:
        """Return the number of placeholders, or the recorded number."""
        kctx = self._active(self.kctx)
        if kctx is None:
            return self._driver().num_input()
        meta = self._meta("PrepareContext.NumInput", with_query=False)
        if kctx.mode == Mode.TEST:
            output = mock_sql_from_yaml(kctx, meta)
            if output is not None:
                return output.count
            with bind_context(kctx):
                replayed = process_dep(meta, 1, KError())
            return int(replayed[0]) if replayed else 1
        if kctx.mode == Mode.RECORD:
            count = 1
            if self.stmt is not None:
                count = int(self.stmt.num_input())
            capture_sql_mocks(
                kctx, meta, INT_TYPE, SqlOutput(count=count, err=["nil"]), count, KError()
            )
            return count
        return 0

    def close(self) -> None:
        """Close the statement, or replay the recorded outcome of closing it."""
        kctx = self._active(self.kctx)
        if kctx is None:
            self._driver().close()
            return
        meta = self._meta("PrepareContext.Close", with_query=False)
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
            if self.stmt is not None:
                try:
                    self.stmt.close()
                except Exception as exc:  # the driver's error is recorded, then re-raised
                    err = exc
            capture_sql_mocks(kctx, meta, ERR_TYPE, SqlOutput(err=[_err_text(err)]), KError(err))
            if err is not None:
                raise err
            return
        raise KeployError(_INVALID_MODE)

    def exec_context(self, args: Sequence[Any]) -> Any:
        """Execute the statement through the driver's context-aware call."""
        kctx = self._call_context()
        in_test = kctx is not None and kctx.mode == Mode.TEST
        if not in_test and not hasattr(self.stmt, "exec_context"):
            raise KeployError("mocked Driver.Conn var not implements StmtExecContext interface")
        active = self._active(kctx)
        if active is None:
            return self.stmt.exec_context(args)
        meta = self._meta("ExecContext", with_query=False, args=args)
        last_meta = {**meta, "operation": "ExecContext.LastInsertId"}
        rows_meta = {**meta, "operation": "ExecContext.RowsAffected"}
        result = Result()
        if active.mode == Mode.TEST:
            output = mock_sql_from_yaml(active, meta)
            if output is not None:
                last = mock_sql_from_yaml(active, last_meta)
                if last is not None and len(last.err) == 1:
                    result.last_inserted = last.count
                    result.l_error = last.err[0]
                affected = mock_sql_from_yaml(active, rows_meta)
                if affected is not None and len(affected.err) == 1:
                    result.rows_aff = affected.count
                    result.r_error = affected.err[0]
                _raise_recorded(output.err[0] if output.err else "nil")
                return result
            with bind_context(active):
                replayed = process_dep(meta, Result(), KError())
            if not replayed:
                return None
            _raise_recorded(replayed[1])
            return replayed[0]
        if active.mode == Mode.RECORD:
            raw: Any = None
            err: Exception | None = None
            try:
                raw = self.stmt.exec_context(args)
            except Exception as exc:  # the driver's error is recorded, then re-raised
                err = exc
            capture_sql_mocks(active, meta, ERR_TYPE, SqlOutput(err=[_err_text(err)]), KError(err))
            if raw is not None:
                last_err: Exception | None = None
                try:
                    result.last_inserted = int(raw.last_insert_id())
                except Exception as exc:  # the driver's error is kept as text
                    last_err = exc
                    result.l_error = str(exc)
                capture_sql_mocks(
                    active,
                    last_meta,
                    INT_TYPE,
                    SqlOutput(count=result.last_inserted, err=[result.l_error]),
                    KError(last_err),
                )
                rows_err: Exception | None = None
                try:
                    result.rows_aff = int(raw.rows_affected())
                except Exception as exc:  # the driver's error is kept as text
                    rows_err = exc
                    result.r_error = str(exc)
                capture_sql_mocks(
                    active,
                    rows_meta,
                    INT_TYPE,
                    SqlOutput(count=result.rows_aff, err=[result.r_error]),
                    KError(rows_err),
                )
            if err is not None:
                raise err
            return result
        raise KeployError(_INVALID_MODE)

    def query_context(self, args: Sequence[Any]) -> Any:
        """Run the statement as a query through the driver's context-aware call."""
        kctx = self._call_context()
        in_test = kctx is not None and kctx.mode == Mode.TEST
        if not in_test and not hasattr(self.stmt, "query_context"):
            raise KeployError("mocked Driver.Conn var not implements StmtQueryerContext interface")
        active = self._active(kctx)
        if active is None:
            return self.stmt.query_context(args)
        meta = self._meta("QueryContext", with_query=False, args=args)
        if active.mode == Mode.TEST:
            output = mock_sql_from_yaml(active, meta)
            if output is not None:
                rows = Rows(kctx=active, args=args)
                if output.err and output.err[0] == "nil":
                    closing = mock_sql_from_yaml(active, {**meta, "operation": "QueryContext.Close"})
                    if closing is not None and closing.table is not None:
                        rows = Rows(
                            kctx=active,
                            args=args,
                            columns=closing.table.cols,
                            recorded_rows=closing.table.rows,
                            errors=closing.err,
                        )
                _raise_recorded(output.err[0] if output.err else "nil")
                return rows
            with bind_context(active):
                replayed = process_dep(meta, KError())
            if replayed:
                _raise_recorded(replayed[0])
            return Rows(kctx=active, args=args)
        if active.mode == Mode.RECORD:
            rows = Rows(kctx=active, args=args)
            err: Exception | None = None
            try:
                rows.rows = self.stmt.query_context(args)
            except Exception as exc:  # the driver's error is recorded, then re-raised
                err = exc
            capture_sql_mocks(active, meta, ERR_TYPE, SqlOutput(err=[_err_text(err)]), KError(err))
            if err is not None:
                raise err
            return rows
        raise KeployError(_INVALID_MODE)