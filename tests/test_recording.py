import pytest

from keploy.deps import decode
from keploy.errors import KError
from keploy.ksql.recording import SqlOutput, capture_sql_mocks, mock_sql_from_yaml
from keploy.mocks import set_mock_client, set_mock_path
from keploy.mode import Context, Mode
from keploy.models import ERR_TYPE, INT_TYPE, SQL_DB, Kind, Mock, MockSpec, SqlCol, SqlTable


class FakeClient:
    def __init__(self):
        self.calls = []

    def put_mock(self, path, mock):
        self.calls.append((path, mock))


@pytest.fixture(autouse=True)
def _reset_export():
    yield
    set_mock_client(None)
    set_mock_path("")


def meta(operation):
    return {"name": "SQL", "type": SQL_DB, "operation": operation}


def sql_mock(operation, err=("nil",), count=0, table=None):
    return Mock(
        kind=Kind.SQL.value,
        spec=MockSpec(metadata=meta(operation), err=list(err), count=count, table=table),
    )


def test_capture_appends_mock_and_dependency():
    kctx = Context(mode=Mode.RECORD, test_id="t-1")
    capture_sql_mocks(kctx, meta("Ping"), INT_TYPE, SqlOutput(count=5, err=["nil"]), 5, KError())
    assert len(kctx.mock) == 1
    recorded = kctx.mock[0]
    assert recorded.kind == Kind.SQL.value
    assert recorded.name == "t-1"
    assert recorded.spec.type == INT_TYPE
    assert recorded.spec.count == 5
    assert recorded.spec.err == ["nil"]
    assert recorded.spec.metadata == meta("Ping")
    assert len(kctx.deps) == 1
    dep = kctx.deps[0]
    assert dep.name == "SQL"
    assert dep.type == SQL_DB
    assert [decode(item) for item in dep.data] == [5, KError()]


def test_capture_keeps_table():
    kctx = Context(mode=Mode.RECORD)
    table = SqlTable(cols=[SqlCol(name="id", type="int64")], rows=["[`1` | ]"])
    capture_sql_mocks(kctx, meta("QueryContext.Close"), "table", SqlOutput(table=table, err=["nil"]))
    assert kctx.mock[0].spec.table == table


def test_capture_exports_when_client_set():
    client = FakeClient()
    set_mock_client(client)
    set_mock_path("/tmp/mocks")
    kctx = Context(mode=Mode.RECORD, test_id="export-1", file_export=True)
    capture_sql_mocks(kctx, meta("Ping"), ERR_TYPE, SqlOutput(err=["nil"]), KError())
    assert kctx.mock == []
    assert kctx.deps == []
    assert len(client.calls) == 1
    path, exported = client.calls[0]
    assert path == "/tmp/mocks"
    assert exported.name == "export-1"


def test_capture_without_file_export_keeps_in_context():
    client = FakeClient()
    set_mock_client(client)
    kctx = Context(mode=Mode.RECORD, test_id="t-2", file_export=False)
    capture_sql_mocks(kctx, meta("Ping"), ERR_TYPE, SqlOutput(err=["nil"]), KError())
    assert client.calls == []
    assert len(kctx.mock) == 1


def test_capture_with_unencodable_arg_keeps_mock_only():
    kctx = Context(mode=Mode.RECORD)
    capture_sql_mocks(kctx, meta("Ping"), ERR_TYPE, SqlOutput(err=["nil"]), lambda: None)
    assert len(kctx.mock) == 1
    assert kctx.deps == []


def test_mock_from_yaml_without_mocks():
    assert mock_sql_from_yaml(Context(mode=Mode.TEST), meta("Ping")) is None


def test_mock_from_yaml_with_generic_first():
    kctx = Context(mode=Mode.TEST, mock=[Mock(kind=Kind.GENERIC.value), sql_mock("Ping")])
    assert mock_sql_from_yaml(kctx, meta("Ping")) is None
    assert len(kctx.mock) == 2


def test_mock_from_yaml_takes_matching_mock():
    kctx = Context(mode=Mode.TEST, mock=[sql_mock("Ping"), sql_mock("BeginTx", err=["boom"], count=3)])
    output = mock_sql_from_yaml(kctx, meta("BeginTx"))
    assert output == SqlOutput(table=None, count=3, err=["boom"])
    assert [m.spec.metadata["operation"] for m in kctx.mock] == ["Ping"]


def test_mock_from_yaml_no_match_is_empty():
    kctx = Context(mode=Mode.TEST, mock=[sql_mock("Ping")])
    output = mock_sql_from_yaml(kctx, meta("BeginTx"))
    assert output == SqlOutput()
    assert len(kctx.mock) == 1


def test_capture_then_replay_round_trip():
    recorded = Context(mode=Mode.RECORD, test_id="t-3")
    capture_sql_mocks(recorded, meta("Ping"), ERR_TYPE, SqlOutput(err=["driver: bad connection"]))
    replay = Context(mode=Mode.TEST, mock=list(recorded.mock))
    output = mock_sql_from_yaml(replay, meta("Ping"))
    assert output.err == ["driver: bad connection"]
    assert replay.mock == []