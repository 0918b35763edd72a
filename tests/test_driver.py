import pytest

from keploy.errors import EndOfRows, KeployError
from keploy.ksql.driver import Conn, Driver
from keploy.mode import Context, Mode, bind_context, set_mode


@pytest.fixture(autouse=True)
def _mode_off():
    set_mode(Mode.OFF)
    yield
    set_mode(Mode.OFF)


class FakeResult:
    def __init__(self, last, affected):
        self.last = last
        self.affected = affected

    def last_insert_id(self):
        return self.last

    def rows_affected(self):
        return self.affected


class FakeRows:
    def __init__(self, names, data):
        self.names = names
        self.data = list(data)

    def columns(self):
        return list(self.names)

    def next(self):
        if not self.data:
            raise EndOfRows()
        return self.data.pop(0)

    def close(self):
        pass


class FakeConn:
    def __init__(self, ping_error=None, begin_error=None):
        self.ping_error = ping_error
        self.begin_error = begin_error
        self.calls = []

    def ping(self):
        self.calls.append("ping")
        if self.ping_error:
            raise self.ping_error

    def begin_tx(self, opts):
        self.calls.append("begin_tx")
        if self.begin_error:
            raise self.begin_error
        return object()

    def prepare_context(self, query):
        self.calls.append("prepare_context")
        return object()

    def exec_context(self, query, args):
        self.calls.append("exec_context")
        return FakeResult(7, 3)

    def query_context(self, query, args):
        self.calls.append("query_context")
        return FakeRows(["id", "name"], [[1, "a"], [2, "b"]])

    def close(self):
        self.calls.append("close")


class BareConn:
    pass


class FakeDriver:
    def __init__(self):
        self.opened = []

    def open(self, dsn):
        self.opened.append(dsn)
        return FakeConn()


def test_open_wraps_driver_connection_when_off():
    driver = FakeDriver()
    conn = Driver(driver).open("db")
    assert driver.opened == ["db"]
    assert isinstance(conn.conn, FakeConn)


def test_open_in_test_mode_skips_driver():
    set_mode(Mode.TEST)
    driver = FakeDriver()
    conn = Driver(driver).open("db")
    assert driver.opened == []
    assert isinstance(conn.conn, Conn)


def test_ping_without_context_reaches_driver():
    fake = FakeConn()
    Conn(fake).ping()
    assert fake.calls == ["ping"]


def test_ping_is_recorded():
    fake = FakeConn()
    kctx = Context(mode=Mode.RECORD)
    with bind_context(kctx):
        Conn(fake).ping()
    assert len(kctx.mock) == 1
    assert kctx.mock[0].spec.metadata["operation"] == "Ping"
    assert kctx.mock[0].spec.err == ["nil"]


def test_failed_ping_is_recorded_and_replayed():
    fake = FakeConn(ping_error=RuntimeError("down"))
    kctx = Context(mode=Mode.RECORD)
    with bind_context(kctx), pytest.raises(RuntimeError, match="down"):
        Conn(fake).ping()
    assert kctx.mock[0].spec.err == ["down"]

    replay = Context(mode=Mode.TEST, mock=list(kctx.mock))
    other = FakeConn()
    with bind_context(replay), pytest.raises(Exception, match="down"):
        Conn(other).ping()
    assert other.calls == []


def test_prepare_context_records_quoted_query():
    kctx = Context(mode=Mode.RECORD)
    with bind_context(kctx):
        stmt = Conn(FakeConn()).prepare_context("select 1")
    assert stmt.query == "select 1"
    assert kctx.mock[0].spec.metadata["query"] == '"select 1"'


def test_prepare_context_replay_does_not_call_driver():
    kctx = Context(mode=Mode.RECORD)
    with bind_context(kctx):
        Conn(FakeConn()).prepare_context("select 1")
    fake = FakeConn()
    replay = Context(mode=Mode.TEST, mock=list(kctx.mock))
    with bind_context(replay):
        stmt = Conn(fake).prepare_context("select 1")
    assert stmt.query == "select 1"
    assert fake.calls == []
    assert replay.mock == []


def test_exec_context_round_trip():
    kctx = Context(mode=Mode.RECORD)
    with bind_context(kctx):
        recorded = Conn(FakeConn()).exec_context("insert", [1])
    assert (recorded.last_insert_id(), recorded.rows_affected()) == (7, 3)
    assert [m.spec.metadata["operation"] for m in kctx.mock] == [
        "ExecContext",
        "ExecContext.LastInsertId",
        "ExecContext.RowsAffected",
    ]

    fake = FakeConn()
    replay = Context(mode=Mode.TEST, mock=list(kctx.mock))
    with bind_context(replay):
        result = Conn(fake).exec_context("insert", [1])
    assert result.last_insert_id() == recorded.last_insert_id()
    assert result.rows_affected() == recorded.rows_affected()
    assert fake.calls == []


def test_query_context_round_trip():
    kctx = Context(mode=Mode.RECORD)
    with bind_context(kctx):
        rows = Conn(FakeConn()).query_context("select", [])
        names = rows.columns()
        recorded = list(rows)
        rows.close()
    assert names == ["id", "name"]
    assert recorded == [[1, "a"], [2, "b"]]

    fake = FakeConn()
    replay = Context(mode=Mode.TEST, mock=list(kctx.mock))
    with bind_context(replay):
        rows = Conn(fake).query_context("select", [])
        assert rows.columns() == names
        assert list(rows) == recorded
        rows.close()
    assert fake.calls == []


def test_begin_tx_error_round_trip():
    kctx = Context(mode=Mode.RECORD)
    with bind_context(kctx), pytest.raises(RuntimeError, match="busy"):
        Conn(FakeConn(begin_error=RuntimeError("busy"))).begin_tx(None)
    replay = Context(mode=Mode.TEST, mock=list(kctx.mock))
    with bind_context(replay), pytest.raises(Exception, match="busy"):
        Conn(FakeConn()).begin_tx(None)


def test_missing_capabilities_raise():
    conn = Conn(BareConn())
    with pytest.raises(KeployError, match="DriverContext"):
        conn.open_connector("x")
    with pytest.raises(KeployError, match="ConnBeginTx"):
        conn.begin_tx(None)
    with pytest.raises(KeployError, match="QueryerContext"):
        conn.query_context("select", [])


def test_close_in_test_mode_skips_driver():
    set_mode(Mode.TEST)
    fake = FakeConn()
    Conn(fake).close()
    assert fake.calls == []
    set_mode(Mode.OFF)
    Conn(fake).close()
    assert fake.calls == ["close"]