import json
from urllib.parse import parse_qs, urlparse

import pytest
import responses

from keploy.app import Keploy, ResponseSlot
from keploy.config import DEFAULT_SERVER_URL, AppConfig, Config, Filter
from keploy.errors import KeployError
from keploy.mode import Mode, get_mode, set_mode
from keploy.models import (
    Dependency,
    GrpcReq,
    GrpcResp,
    HttpReq,
    HttpResp,
    TestCase,
    TestCaseReq,
)

SERVER = DEFAULT_SERVER_URL
APP_URL = "http://0.0.0.0:8080"


@pytest.fixture(autouse=True)
def _off_mode():
    previous = get_mode()
    set_mode(Mode.OFF)
    yield
    set_mode(previous)


def make_config(**app_kw):
    return Config(
        app=AppConfig(
            name="demo",
            port="8080",
            delay=0,
            timeout=5,
            test_path="/data/tests",
            mock_path="/data/mocks",
            **app_kw,
        )
    )


def app_callback(k, status=200, body="hi", seen=None):
    def callback(request):
        test_id = request.headers["KEPLOY_TEST_ID"]
        if seen is not None:
            seen.append((test_id, k.get_clock(test_id), k.get_dependencies(test_id), request.body))
        slot = k.get_resp(test_id)
        slot.resp = HttpResp(status_code=status, body=body)
        k.put_resp(test_id, slot)
        slot.done.set()
        return (status, {}, body)

    return callback


def fetch_callback(cases_by_kind):
    def callback(request):
        kind = parse_qs(urlparse(request.url).query)["reqType"][0]
        cases = cases_by_kind.get(kind, [])
        return (200, {}, json.dumps([case.to_dict() for case in cases]))

    return callback


def mock_server():
    return responses.RequestsMock(assert_all_requests_are_fired=False)


def test_get_resp_of_unknown_id_is_empty_slot():
    k = Keploy(make_config(), autostart=False)
    slot = k.get_resp("missing")
    assert slot.resp == HttpResp()
    assert not slot.done.is_set()


def test_put_and_get_resp_round_trip():
    k = Keploy(make_config(), autostart=False)
    slot = ResponseSlot(resp=HttpResp(status_code=204))
    k.put_resp("a", slot)
    assert k.get_resp("a") is slot


def test_simulate_returns_response_recorded_by_middleware():
    k = Keploy(make_config(), autostart=False)
    seen = []
    tc = TestCase(
        id="tc1",
        captured=1700000000,
        http_req=HttpReq(method="POST", url="/hello", body="x"),
        deps=[Dependency(name="d")],
    )
    with mock_server() as rsps:
        rsps.add_callback(
            responses.POST, APP_URL + "/hello", callback=app_callback(k, 201, "made", seen)
        )
        resp = k.simulate(tc)
    assert resp == HttpResp(status_code=201, body="made")
    assert seen[0][:3] == ("tc1", 1700000000, [Dependency(name="d")])
    assert seen[0][3] == b"x"
    assert k.get_clock("tc1") == 0
    assert k.get_dependencies("tc1") is None


def test_simulate_raises_when_app_unreachable():
    k = Keploy(make_config(), autostart=False)
    with mock_server():
        with pytest.raises(KeployError):
            k.simulate(TestCase(id="tc2", http_req=HttpReq(method="GET", url="/x")))
    assert k.get_resp("tc2").resp == HttpResp()


@pytest.mark.parametrize("verdict", [True, False])
def test_test_run_reports_server_verdict(verdict):
    k = Keploy(make_config(), autostart=False)
    case = TestCase(id="c1", type="Http", http_req=HttpReq(method="GET", url="/hello"))
    with mock_server() as rsps:
        rsps.add_callback(
            responses.GET, SERVER + "/regression/testcase", callback=fetch_callback({"Http": [case]})
        )
        rsps.add(responses.GET, SERVER + "/regression/start", json={"id": "run-1"})
        rsps.add_callback(responses.GET, APP_URL + "/hello", callback=app_callback(k))
        rsps.add(responses.POST, SERVER + "/regression/test", json={"pass": verdict})
        rsps.add(responses.GET, SERVER + "/regression/end", json={})
        outcome = k.test()
        end_urls = [call.request.url for call in rsps.calls if "/regression/end" in call.request.url]
        test_bodies = [
            json.loads(call.request.body)
            for call in rsps.calls
            if call.request.url.endswith("/regression/test")
        ]
    assert outcome is verdict
    assert k.wait_result(1) is verdict
    assert len(end_urls) == 1
    query = parse_qs(urlparse(end_urls[0]).query)
    assert query["id"] == ["run-1"]
    assert query["status"] == ["true" if verdict else "false"]
    assert test_bodies[0]["run_id"] == "run-1"
    assert test_bodies[0]["resp"]["body"] == "hi"


def test_test_run_returns_none_when_start_fails():
    k = Keploy(make_config(), autostart=False)
    with mock_server() as rsps:
        rsps.add_callback(responses.GET, SERVER + "/regression/testcase", callback=fetch_callback({}))
        rsps.add(responses.GET, SERVER + "/regression/start", status=500)
        assert k.test() is None
    with pytest.raises(TimeoutError):
        k.wait_result(0.05)


def test_wait_result_times_out():
    k = Keploy(make_config(), autostart=False)
    with pytest.raises(TimeoutError):
        k.wait_result(0.01)


def test_test_mode_starts_run_automatically():
    set_mode(Mode.TEST)
    with mock_server() as rsps:
        rsps.add_callback(responses.GET, SERVER + "/regression/testcase", callback=fetch_callback({}))
        rsps.add(responses.GET, SERVER + "/regression/start", json={"id": "r1"})
        rsps.add(responses.GET, SERVER + "/regression/end", json={})
        k = Keploy(make_config())
        assert k.wait_result(5) is True
        start_urls = [c.request.url for c in rsps.calls if "/regression/start" in c.request.url]
    assert parse_qs(urlparse(start_urls[0]).query)["total"] == ["0"]


def test_capture_posts_testcase_and_denoises():
    k = Keploy(make_config(), autostart=False)
    k.denoise_delay = 0
    seen = []
    tcs = TestCaseReq(
        captured=5,
        app_id="demo",
        uri="/hello",
        http_req=HttpReq(method="GET", url="/hello"),
        type="Http",
    )
    with mock_server() as rsps:
        rsps.add(responses.POST, SERVER + "/regression/testcase", json={"id": "tc-9"})
        rsps.add_callback(responses.GET, APP_URL + "/hello", callback=app_callback(k, 200, "again", seen))
        rsps.add(responses.POST, SERVER + "/regression/denoise", json={})
        worker = k.capture(tcs)
        worker.join(5)
        assert not worker.is_alive()
        denoise = [
            json.loads(c.request.body)
            for c in rsps.calls
            if c.request.url.endswith("/regression/denoise")
        ]
    assert seen[0][0] == "tc-9"
    assert seen[0][1] == 5
    assert denoise[0]["id"] == "tc-9"
    assert denoise[0]["resp"]["body"] == "again"
    assert denoise[0]["test_case_path"] == "/data/tests"


def test_capture_skips_rejected_url():
    k = Keploy(make_config(filter=Filter(reject_url_regex=["/skip"])), autostart=False)
    tcs = TestCaseReq(uri="/skip/me", http_req=HttpReq(method="GET", url="/skip/me"), type="Http")
    with mock_server() as rsps:
        rsps.add(responses.POST, SERVER + "/regression/testcase", json={"id": ""})
        worker = k.capture(tcs)
        worker.join(5)
        assert not worker.is_alive()
        assert len(rsps.calls) == 0


def test_capture_without_id_does_not_denoise():
    k = Keploy(make_config(), autostart=False)
    tcs = TestCaseReq(uri="/a", http_req=HttpReq(method="GET", url="/a"), type="Http")
    with mock_server() as rsps:
        rsps.add(responses.POST, SERVER + "/regression/testcase", json={"id": ""})
        worker = k.capture(tcs)
        worker.join(5)
        assert not worker.is_alive()
        urls = [c.request.url for c in rsps.calls]
    assert urls == [SERVER + "/regression/testcase"]


def test_get_returns_testcase():
    k = Keploy(make_config(), autostart=False)
    with mock_server() as rsps:
        rsps.add(
            responses.GET,
            SERVER + "/regression/testcase/abc",
            json=TestCase(id="abc", uri="/u").to_dict(),
        )
        tc = k.get("abc")
    assert tc.id == "abc"
    assert tc.uri == "/u"


def test_get_returns_none_on_server_error():
    k = Keploy(make_config(), autostart=False)
    with mock_server() as rsps:
        rsps.add(responses.GET, SERVER + "/regression/testcase/abc", status=500)
        assert k.get("abc") is None
        assert len(rsps.calls) == 1


def test_check_grpc_case_uses_invoker():
    calls = []

    def invoker(body, metadata, target, method):
        calls.append((body, metadata, target, method))
        test_id = metadata.split(":", 1)[1]
        slot = k.get_resp(test_id)
        slot.resp = GrpcResp(body='{"ok":true}')
        slot.done.set()

    k = Keploy(make_config(), grpc_invoker=invoker, autostart=False)
    tc = TestCase(id="g1", type="gRPC", grpc_req=GrpcReq(body='{"a":1}', method="svc.Method"))
    with mock_server() as rsps:
        rsps.add(responses.POST, SERVER + "/regression/test", json={"pass": True})
        assert k.check("r1", tc) is True
        payload = json.loads(rsps.calls[0].request.body)
    assert calls == [('{"a":1}', "tid:g1", "localhost:8080", "svc.Method")]
    assert payload["grpc_resp"]["body"] == '{"ok":true}'
    assert payload["type"] == "gRPC"


def test_check_unknown_type_fails():
    k = Keploy(make_config(), autostart=False)
    with mock_server() as rsps:
        assert k.check("r1", TestCase(id="x", type="Other")) is False
        assert len(rsps.calls) == 0