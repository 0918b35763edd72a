"""Result sets whose rows are recorded while reading and replayed in tests."""

from __future__ import annotations

import logging
from collections.abc import Iterator, Sequence
from typing import Any

from ..deps import encode, process_dep
from ..errors import EndOfRows, KError, KeployError, StateError, convert_kerror
from ..mode import Context, Mode, bind_context, get_state
from ..models import SQL_DB, TABLE_TYPE, Dependency, SqlCol, SqlTable
from .recording import SqlOutput, capture_sql_mocks
from .values import str_to_value, type_name, value_to_str

logger = logging.getLogger("keploy")

_INVALID_MODE = "integrations: Not in a valid sdk mode"
_NIL_TYPE = "<nil>"
_SEPARATOR = "` | `"


def _bound_context() -> Context | None:
    try:
        return get_state()
    except StateError:
        return None


def _raise_recorded(err: Any) -> None:
    converted = convert_kerror(err)
    if converted is not None:
        raise converted


def _error_text(exc: BaseException) -> str:
    return "EOF" if isinstance(exc, EndOfRows) else str(exc)


def _meta(operation: str) -> dict[str, str]:
    return {"name": "SQL", "type": SQL_DB, "operation": operation}


def _row_text(row: Sequence[Any]) -> str:
    return "[" + "".join(f"`{value_to_str(value)}` | " for value in row) + "]"


class Rows:
    """Wraps driver rows so that columns, rows and errors are recorded or replayed.

    In test mode the rows come from a recorded table: its columns, its
    textual rows and the error text of every read followed by the one of close.
    """

    def __init__(
        self,
        rows: Any = None,
        kctx: Context | None = None,
        *,
        query: str = "",
        args: Sequence[Any] | None = None,
        columns: Sequence[SqlCol] | None = None,
        recorded_rows: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
    ) -> None:
        self.rows = rows
        self.kctx = kctx if kctx is not None else _bound_context()
        self.query = query
        self.args = list(args) if args is not None else []
        self._columns = (
            None if columns is None else [SqlCol(name=col.name, type=col.type) for col in columns]
        )
        self._rows = None if recorded_rows is None else list(recorded_rows)
        self._err = None if errors is None else list(errors)
        self._last: list[Any] = []

    def _active(self) -> Context | None:
        kctx = self.kctx
        if kctx is None or kctx.mode == Mode.OFF:
            return None
        return kctx

    def _driver(self) -> Any:
        if self.rows is None:
            raise KeployError("no driver rows to read")
        return self.rows

    def _record_dep(self, kctx: Context, meta: dict[str, str], *outputs: Any) -> None:
        try:
            encoded = [encode(output) for output in outputs]
        except Exception as exc:  # pickling fails in many different ways
            logger.error(
                "dependency capture failed: failed to encode object (test id %s): %s",
                kctx.test_id,
                exc,
            )
            return
        with kctx.lock:
            kctx.deps.append(
                Dependency(name=meta["name"], type=meta["type"], data=encoded, meta=dict(meta))
            )

    def columns(self) -> list[str]:
        """Return the column names of the result set."""
        kctx = self._active()
        if kctx is None:
            return list(self._driver().columns())
        meta = _meta("QueryContext.Columns")
        if kctx.mode == Mode.TEST:
            if self._columns is not None:
                return [col.name for col in self._columns]
            with bind_context(kctx):
                replayed = process_dep(meta, [])
            return list(replayed[0] or []) if replayed else []
        if kctx.mode == Mode.RECORD:
            names: list[str] = []
            if self.rows is not None:
                names = list(self.rows.columns())
                self._columns = (self._columns or []) + [
                    SqlCol(name=name, type=_NIL_TYPE) for name in names
                ]
            self._record_dep(kctx, meta, names)
            return names
        raise KeployError(_INVALID_MODE)

    def next(self) -> list[Any]:
        """Return the next row, or raise EndOfRows when there is none."""
        kctx = self._active()
        if kctx is None:
            return list(self._driver().next())
        meta = _meta("QueryContext.Next")
        if kctx.mode == Mode.TEST:
            return self._replay_next(kctx, meta)
        if kctx.mode == Mode.RECORD:
            return self._record_next(kctx, meta)
        raise KeployError(_INVALID_MODE)

    def _parse_row(self, text: str) -> list[Any]:
        if text == "[]":
            return []
        parts = text.split(_SEPARATOR)
        last = len(parts) - 1
        columns = self._columns or []
        values = []
        for index, part in enumerate(parts):
            if index == 0 and part:
                part = part[2:]
            if index == last and len(part) > 4:
                part = part[:-5]
            column_type = columns[index].type if index < len(columns) else ""
            try:
                values.append(str_to_value(part, column_type))
            except ValueError as exc:
                logger.error("failed to convert recorded text to a driver value: %s", exc)
                raise
        return values

    def _replay_next(self, kctx: Context, meta: dict[str, str]) -> list[Any]:
        if self._rows:
            values = self._parse_row(self._rows[0])
            del self._rows[0]
            err_text = self._err.pop(0) if self._err else "nil"
            _raise_recorded(err_text)
            return values
        with bind_context(kctx):
            replayed = process_dep(meta, KError(), [])
        if not replayed:
            raise EndOfRows()
        _raise_recorded(replayed[0])
        return list(replayed[1] or [])

    def _record_next(self, kctx: Context, meta: dict[str, str]) -> list[Any]:
        if self.rows is None:
            raise KeployError("no driver rows to read")
        err: Exception | None = None
        try:
            row = list(self.rows.next())
        except Exception as exc:  # the driver's error is recorded, then re-raised
            err = exc
            row = list(self._last) if self._last else [None] * len(self._columns or [])
        else:
            self._last = row

        columns = self._columns if self._columns is not None else []
        while len(columns) < len(row):
            columns.append(SqlCol(name="", type=_NIL_TYPE))
        for column, value in zip(columns, row):
            if column.type == _NIL_TYPE:
                column.type = type_name(value)
        self._columns = columns[: len(row)]

        if self._rows is None:
            self._rows = []
        self._rows.append(_row_text(row))
        if self._err is None:
            self._err = []
        self._err.append("nil" if err is None else _error_text(err))

        self._record_dep(kctx, meta, KError(err), row)
        if err is not None:
            raise err
        return row

    def close(self) -> None:
        """Close the rows, or replay the recorded outcome of closing them."""
        kctx = self._active()
        if kctx is None:
            self._driver().close()
            return
        meta = _meta("QueryContext.Close")
        if kctx.mode == Mode.TEST:
            if self._err:
                _raise_recorded(self._err.pop(0))
                return
            with bind_context(kctx):
                replayed = process_dep(meta, KError())
            if replayed:
                _raise_recorded(replayed[0])
            return
        if kctx.mode == Mode.RECORD:
            err: Exception | None = None
            if self.rows is not None:
                try:
                    self.rows.close()
                except Exception as exc:  # the driver's error is recorded, then re-raised
                    err = exc
            table = SqlTable(
                cols=[SqlCol(name=col.name, type=col.type) for col in self._columns or []],
                rows=list(self._rows or []),
            )
            errors = list(self._err or []) + ["nil" if err is None else _error_text(err)]
            capture_sql_mocks(
                kctx, meta, TABLE_TYPE, SqlOutput(table=table, count=0, err=errors), KError(err)
            )
            if err is not None:
                raise err
            return
        raise KeployError(_INVALID_MODE)

    def __iter__(self) -> Iterator[list[Any]]:
        while True:
            try:
                yield self.next()
            except EndOfRows:
                return