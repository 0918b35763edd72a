"""A database driver wrapper whose connections record and replay SQL calls."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from ..deps import process_dep
from ..errors import KError, KeployError, StateError, convert_kerror
from ..mode import Context, Mode, bind_context, get_mode, get_state
from ..models import ERR_TYPE, INT_TYPE, SQL_DB
from .recording import SqlOutput, capture_sql_mocks, mock_sql_from_yaml
from .rows import Rows
from .statement import Stmt
from .transaction import Result, Tx

logger = logging.getLogger("keploy")

_INVALID_MODE = "integrations: Not in a valid sdk mode"


def _bound_context() -> Context | None:
    try:
        return get_state()
    except StateError:
        return None


def _active() -> Context | None:
    kctx = _bound_context()
    if kctx is None or kctx.mode == Mode.OFF:
        return None
    return kctx


def _raise_recorded(err: Any) -> None:
    converted = convert_kerror(err)
    if converted is not None:
        raise converted


def _format_args(args: Sequence[Any]) -> str:
    return "[" + " ".join(str(arg) for arg in args) + "]"


def _err_text(err: Exception | None) -> str:
    return "nil" if err is None else str(err)


def _first_err(output: SqlOutput) -> str:
    return output.err[0] if output.err else "nil"


def _meta(operation: str, **extra: str) -> dict[str, str]:
    return {"name": "SQL", "type": SQL_DB, "operation": operation, **extra}


class Driver:
    """Wraps a database driver so that the connections it opens are recorded or replayed."""

    def __init__(self, driver: Any) -> None:
        self.driver = driver

    def open(self, dsn: str) -> Conn:
        """Open a connection; in test mode no real connection is made."""
        if get_mode() == Mode.TEST:
            return Conn(Conn())
        return Conn(self.driver.open(dsn))


class Conn:
    """Wraps a driver connection; calls use the keploy context bound at call time."""

    def __init__(self, conn: Any = None) -> None:
        self.conn = conn

    def _driver(self) -> Any:
        if self.conn is None:
            raise KeployError("no driver connection")
        return self.conn

    def begin(self) -> Any:
        """Start a transaction; in test mode nothing reaches the driver."""
        if get_mode() == Mode.TEST:
            return Tx()
        return self._driver().begin()

    def close(self) -> None:
        """Close the connection; in test mode nothing reaches the driver."""
        if get_mode() == Mode.TEST:
            return
        self._driver().close()

    def prepare(self, query: str) -> Any:
        """Prepare a statement; in test mode a replaying statement is returned."""
        if get_mode() == Mode.TEST:
            return Stmt(query=query)
        return self._driver().prepare(query)

    def open_connector(self, name: str) -> Any:
        """Open a connector through the wrapped connection, if it supports that."""
        opener = getattr(self.conn, "open_connector", None)
        if opener is None:
            raise KeployError("mocked Driver.Conn var not implements DriverContext interface")
        return opener(name)

    def ping(self) -> None:
        """Ping the database, or replay the recorded outcome of the ping."""
        if not hasattr(self.conn, "ping") and get_mode() != Mode.TEST:
            raise KeployError("returned var not implements Ping interface")
        kctx = _active()
        if kctx is None:
            self._driver().ping()
            return
        meta = _meta("Ping")
        if kctx.mode == Mode.TEST:
            output = mock_sql_from_yaml(kctx, meta)
            if output is not None:
                _raise_recorded(_first_err(output))
                return
            with bind_context(kctx):
                replayed = process_dep(meta, KError())
            if replayed:
                _raise_recorded(replayed[0])
            return
        if kctx.mode == Mode.RECORD:
            err: Exception | None = None
            try:
                self.conn.ping()
            except Exception as exc:  # the driver's error is recorded, then re-raised
                err = exc
            capture_sql_mocks(kctx, meta, ERR_TYPE, SqlOutput(err=[_err_text(err)]), KError(err))
            if err is not None:
                raise err
            return
        raise KeployError(_INVALID_MODE)

    def begin_tx(self, opts: Any = None) -> Tx | Any:
        """Start a transaction with options, or replay the recorded outcome."""
        if not hasattr(self.conn, "begin_tx"):
            raise KeployError("returned var not implements ConnBeginTx interface")
        kctx = _active()
        if kctx is None:
            return self.conn.begin_tx(opts)
        meta = _meta("BeginTx", options=str(opts))
        if kctx.mode == Mode.TEST:
            tx = Tx(kctx=kctx)
            output = mock_sql_from_yaml(kctx, meta)
            if output is not None and len(output.err) == 1:
                _raise_recorded(output.err[0])
                return tx
            with bind_context(kctx):
                replayed = process_dep(meta, KError())
            if replayed:
                _raise_recorded(replayed[0])
            return tx
        if kctx.mode == Mode.RECORD:
            err: Exception | None = None
            raw: Any = None
            try:
                raw = self.conn.begin_tx(opts)
            except Exception as exc:  # the driver's error is recorded, then re-raised
                err = exc
            capture_sql_mocks(kctx, meta, ERR_TYPE, SqlOutput(err=[_err_text(err)]), KError(err))
            if err is not None:
                raise err
            return Tx(tx=raw, kctx=kctx)
        raise KeployError(_INVALID_MODE)

    def prepare_context(self, query: str) -> Stmt:
        """Prepare a statement whose calls are recorded or replayed."""
        if not hasattr(self.conn, "prepare_context"):
            raise KeployError("returned var not implements PrepareContext interface")
        kctx = _active()
        if kctx is None:
            return Stmt(self.conn.prepare_context(query), query=query)
        meta = _meta("PrepareContext", query=f'"{query}"')
        if kctx.mode == Mode.TEST:
            stmt = Stmt(kctx=kctx, query=query)
            output = mock_sql_from_yaml(kctx, meta)
            if output is not None and len(output.err) == 1:
                _raise_recorded(output.err[0])
                return stmt
            with bind_context(kctx):
                replayed = process_dep(meta, KError())
            if replayed:
                _raise_recorded(replayed[0])
            return stmt
        if kctx.mode == Mode.RECORD:
            err: Exception | None = None
            raw: Any = None
            try:
                raw = self.conn.prepare_context(query)
            except Exception as exc:  # the driver's error is recorded, then re-raised
                err = exc
            capture_sql_mocks(kctx, meta, ERR_TYPE, SqlOutput(err=[_err_text(err)]), KError(err))
            if err is not None:
                raise err
            return Stmt(raw, kctx=kctx, query=query)
        raise KeployError(_INVALID_MODE)

    def exec_context(self, query: str, args: Sequence[Any]) -> Any:
        """Execute a query, or replay its recorded result."""
        kctx = _active()
        if kctx is None:
            return self._driver().exec_context(query, args)
        meta = _meta("ExecContext", query=f'"{query}"', arguments=_format_args(args))
        last_meta = {**meta, "operation": "ExecContext.LastInsertId"}
        rows_meta = {**meta, "operation": "ExecContext.RowsAffected"}
        result = Result()
        if kctx.mode == Mode.TEST:
            output = mock_sql_from_yaml(kctx, meta)
            if output is not None and len(output.err) == 1:
                last = mock_sql_from_yaml(kctx, last_meta)
                if last is not None and len(last.err) == 1:
                    result.last_inserted = last.count
                    result.l_error = last.err[0]
                affected = mock_sql_from_yaml(kctx, rows_meta)
                if affected is not None and len(affected.err) == 1:
                    result.rows_aff = affected.count
                    result.r_error = affected.err[0]
                _raise_recorded(output.err[0])
                return result
            return self._replay_exec(kctx, meta, result)
        if kctx.mode == Mode.RECORD:
            return self._record_exec(kctx, meta, last_meta, rows_meta, query, args, result)
        raise KeployError(_INVALID_MODE)

    @staticmethod
    def _replay_exec(kctx: Context, meta: dict[str, str], result: Result) -> Result | None:
        with bind_context(kctx):
            replayed = process_dep(meta, KError())
            if not replayed:
                return None
            error = convert_kerror(replayed[0])
            last = process_dep(meta, 0, KError())
            if last:
                last_err = convert_kerror(last[1])
                if last_err is not None:
                    result.l_error = str(last_err)
                result.last_inserted = int(last[0])
            affected = process_dep(meta, 0, KError())
            if affected:
                rows_err = convert_kerror(affected[1])
                if rows_err is not None:
                    result.r_error = str(rows_err)
                result.rows_aff = int(affected[0])
        if error is not None:
            raise error
        return result

    def _record_exec(
        self,
        kctx: Context,
        meta: dict[str, str],
        last_meta: dict[str, str],
        rows_meta: dict[str, str],
        query: str,
        args: Sequence[Any],
        result: Result,
    ) -> Result:
        raw: Any = None
        err: Exception | None = None
        try:
            raw = self._driver().exec_context(query, args)
        except Exception as exc:  # the driver's error is recorded, then re-raised
            err = exc
        capture_sql_mocks(kctx, meta, ERR_TYPE, SqlOutput(err=[_err_text(err)]), KError(err))
        if raw is not None:
            last_err: Exception | None = None
            try:
                result.last_inserted = int(raw.last_insert_id())
            except Exception as exc:  # the driver's error is kept as text
                last_err = exc
                result.l_error = str(exc)
            capture_sql_mocks(
                kctx,
                last_meta,
                INT_TYPE,
                SqlOutput(count=result.last_inserted, err=[result.l_error]),
                result.last_inserted,
                KError(last_err),
            )
            rows_err: Exception | None = None
            try:
                result.rows_aff = int(raw.rows_affected())
            except Exception as exc:  # the driver's error is kept as text
                rows_err = exc
                result.r_error = str(exc)
            capture_sql_mocks(
                kctx,
                rows_meta,
                INT_TYPE,
                SqlOutput(count=result.rows_aff, err=[result.r_error]),
                result.rows_aff,
                KError(rows_err),
            )
        if err is not None:
            raise err
        return result

    def query_context(self, query: str, args: Sequence[Any]) -> Any:
        """Run a query and return rows that are recorded or replayed."""
        if not hasattr(self.conn, "query_context"):
            raise KeployError("returned var not implements QueryerContext interface")
        kctx = _active()
        if kctx is None:
            return self.conn.query_context(query, args)
        meta = _meta("QueryContext", query=f'"{query}"', arguments=_format_args(args))
        if kctx.mode == Mode.TEST:
            output = mock_sql_from_yaml(kctx, meta)
            if output is not None:
                rows = Rows(kctx=kctx, query=query, args=args)
                closing = mock_sql_from_yaml(kctx, {**meta, "operation": "QueryContext.Close"})
                if closing is not None and closing.table is not None:
                    rows = Rows(
                        kctx=kctx,
                        query=query,
                        args=args,
                        columns=closing.table.cols,
                        recorded_rows=closing.table.rows,
                        errors=closing.err,
                    )
                _raise_recorded(_first_err(output))
                return rows
            with bind_context(kctx):
                replayed = process_dep(meta, KError())
            if replayed:
                _raise_recorded(replayed[0])
            return Rows(kctx=kctx, query=query, args=args)
        if kctx.mode == Mode.RECORD:
            rows = Rows(kctx=kctx, query=query, args=args)
            err: Exception | None = None
            try:
                rows.rows = self.conn.query_context(query, args)
            except Exception as exc:  # the driver's error is recorded, then re-raised
                err = exc
            capture_sql_mocks(kctx, meta, ERR_TYPE, SqlOutput(err=[_err_text(err)]), KError(err))
            if err is not None:
                raise err
            return rows
        raise KeployError(_INVALID_MODE)