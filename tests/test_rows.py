from datetime import datetime, timezone

import pytest

from keploy.errors import EndOfRows, KeployError
from keploy.ksql.rows import Rows
from keploy.mode import Context, Mode
from keploy.models import TABLE_TYPE, Kind


class FakeRows:
    def __init__(self, names, data, close_error=None, next_error=None):
        self.names = list(names)
        self.data = [list(row) for row in data]
        self.close_error = close_error
        self.next_error = next_error
        self.closed = False

    def columns(self):
        return list(self.names)

    def next(self):
        if self.data:
            return self.data.pop(0)
        if self.next_error is not None:
            raise self.next_error
        raise EndOfRows()

    def close(self):
        self.closed = True
        if self.close_error is not None:
            raise self.close_error


def _record(names, data, **kwargs):
    kctx = Context(mode=Mode.RECORD)
    fake = FakeRows(names, data, **kwargs)
    rows = Rows(fake, kctx)
    return kctx, fake, rows


def _replay(kctx):
    mock = kctx.mock[-1]
    return Rows(
        kctx=Context(mode=Mode.TEST),
        columns=mock.spec.table.cols,
        recorded_rows=mock.spec.table.rows,
        errors=mock.spec.err,
    )


def test_record_passes_driver_rows_through():
    kctx, fake, rows = _record(["id", "name"], [[1, "a"], [2, "b"]])
    assert rows.columns() == ["id", "name"]
    assert list(rows) == [[1, "a"], [2, "b"]]
    rows.close()
    assert fake.closed
    assert len(kctx.deps) == 5
    assert kctx.deps[0].meta["operation"] == "QueryContext.Columns"


def test_record_stores_table_rows_and_errors():
    kctx, _, rows = _record(["id", "name"], [[1, "a"], [2, "b"]])
    rows.columns()
    list(rows)
    rows.close()
    assert len(kctx.mock) == 1
    mock = kctx.mock[0]
    assert mock.kind == Kind.SQL.value
    assert mock.spec.type == TABLE_TYPE
    assert mock.spec.metadata["operation"] == "QueryContext.Close"
    assert mock.spec.table.rows == ["[`1` | `a` | ]", "[`2` | `b` | ]", "[`2` | `b` | ]"]
    assert [col.type for col in mock.spec.table.cols] == ["int64", "string"]
    assert mock.spec.err == ["nil", "nil", "EOF", "nil"]


def test_replay_returns_recorded_rows():
    kctx, _, rows = _record(["id", "name"], [[1, "a"], [2, "b"]])
    rows.columns()
    list(rows)
    rows.close()
    replay = _replay(kctx)
    assert replay.columns() == ["id", "name"]
    assert list(replay) == [[1, "a"], [2, "b"]]


def test_replay_round_trips_value_types():
    stamp = datetime(2023, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    data = [[1.5, True, b"\x01\x02", stamp, "text"]]
    kctx, _, rows = _record(["f", "b", "raw", "at", "s"], data)
    rows.columns()
    list(rows)
    rows.close()
    assert list(_replay(kctx)) == data


def test_replay_close_raises_recorded_error():
    kctx, _, rows = _record(["id"], [[7]], close_error=RuntimeError("disk gone"))
    rows.columns()
    list(rows)
    with pytest.raises(RuntimeError, match="disk gone"):
        rows.close()
    replay = _replay(kctx)
    assert list(replay) == [[7]]
    with pytest.raises(Exception, match="disk gone"):
        replay.close()


def test_record_next_error_is_reraised_and_recorded():
    kctx, _, rows = _record(["id"], [[1]], next_error=RuntimeError("broken"))
    rows.columns()
    assert rows.next() == [1]
    with pytest.raises(RuntimeError, match="broken"):
        rows.next()
    rows.close()
    assert kctx.mock[-1].spec.err == ["nil", "broken", "nil"]


def test_off_mode_delegates_to_driver():
    fake = FakeRows(["x"], [[3], [4]])
    rows = Rows(fake, Context(mode=Mode.OFF))
    assert rows.columns() == ["x"]
    assert list(rows) == [[3], [4]]
    rows.close()
    assert fake.closed


def test_replay_without_recorded_rows_ends():
    rows = Rows(kctx=Context(mode=Mode.TEST))
    with pytest.raises(EndOfRows):
        rows.next()
    assert list(Rows(kctx=Context(mode=Mode.TEST))) == []


def test_record_without_driver_rows_raises():
    rows = Rows(None, Context(mode=Mode.RECORD))
    with pytest.raises(KeployError):
        rows.next()