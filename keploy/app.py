"""The SDK instance: captures test cases and replays them against the application."""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections.abc import Callable, Iterator
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import requests

from .config import Config
from .errors import KeployError
from .mode import Mode, get_mode
from .models import (
    Dependency,
    GrpcResp,
    HttpResp,
    Kind,
    Mock,
    TestCase,
    TestCaseReq,
    TestReq,
)
from .server import ServerClient, ServerError

logger = logging.getLogger("keploy")

MAX_PARALLEL_TESTS = 10
TEST_ID_HEADER = "KEPLOY_TEST_ID"

GrpcInvoker = Callable[[str, str, str, str], Any]


def _kind(value: Any) -> str:
    return value.value if isinstance(value, Enum) else str(value)


@dataclass
class ResponseSlot:
    """Where the middleware leaves the response of a simulated test case."""

    resp: HttpResp | GrpcResp = field(default_factory=HttpResp)
    done: threading.Event = field(default_factory=threading.Event, repr=False, compare=False)


class Keploy:
    """Captures API calls as test cases and runs recorded test cases.

    When the SDK is in test mode the test run starts in a background
    thread as soon as the instance is created, unless autostart is False.
    gRPC test cases are simulated through grpc_invoker, called with the
    request body, the metadata "tid:<id>", the target and the method.
    """

    def __init__(
        self,
        config: Config,
        *,
        session: requests.Session | None = None,
        grpc_invoker: GrpcInvoker | None = None,
        autostart: bool = True,
    ) -> None:
        try:
            config.validate()
        except ValueError as exc:
            logger.error("%s", exc)
        self.config = config.resolved()
        self.session = session or requests.Session()
        self.server = ServerClient(self.config, self.session)
        self.grpc_invoker = grpc_invoker
        self.denoise_delay = 2.0
        self._lock = threading.Lock()
        self._deps: dict[str, list[Dependency]] = {}
        self._mocks: dict[str, list[Mock]] = {}
        self._mocktime: dict[str, int] = {}
        self._resp: dict[str, ResponseSlot] = {}
        self._results: queue.Queue[bool] = queue.Queue()
        if autostart and get_mode() == Mode.TEST:
            threading.Thread(target=self.test, daemon=True).start()

    # shared per-test-case state

    def get_mocks(self, test_id: str) -> list[Mock] | None:
        """Return the mocks of a test case being simulated, if any."""
        with self._lock:
            return self._mocks.get(test_id)

    def get_dependencies(self, test_id: str) -> list[Dependency] | None:
        """Return the dependencies of a test case being simulated, if any."""
        with self._lock:
            return self._deps.get(test_id)

    def get_clock(self, test_id: str) -> int:
        """Return the capture time of a test case being simulated, or 0."""
        with self._lock:
            return self._mocktime.get(test_id, 0)

    def get_resp(self, test_id: str) -> ResponseSlot:
        """Return the response slot of a test case, or an empty one."""
        with self._lock:
            slot = self._resp.get(test_id)
        return slot if slot is not None else ResponseSlot()

    def put_resp(self, test_id: str, slot: ResponseSlot) -> None:
        """Store the response slot of a test case."""
        with self._lock:
            self._resp[test_id] = slot

    def _drop_resp(self, test_id: str) -> None:
        with self._lock:
            self._resp.pop(test_id, None)

    @contextmanager
    def _bound(self, tc: TestCase) -> Iterator[None]:
        with self._lock:
            self._deps[tc.id] = tc.deps
            self._mocks[tc.id] = tc.mocks
            self._mocktime[tc.id] = tc.captured
        try:
            yield
        finally:
            with self._lock:
                self._deps.pop(tc.id, None)
                self._mocks.pop(tc.id, None)
                self._mocktime.pop(tc.id, None)

    # recording

    def capture(self, tcs: TestCaseReq) -> threading.Thread:
        """Send a captured test case to the server in the background; return the worker."""
        worker = threading.Thread(target=self._put, args=(tcs,), daemon=True)
        worker.start()
        return worker

    def _put(self, tcs: TestCaseReq) -> None:
        if _kind(tcs.type) == Kind.HTTP.value:
            rules = self.config.app.filter
            if not rules.header_allowed(tcs.http_req.header.keys()):
                return
            if not rules.url_allowed(tcs.http_req.url):
                return
            if not rules.accepts(tcs.uri):
                return
        try:
            test_id = self.server.post_testcase(tcs)
        except ServerError as exc:
            logger.error("failed to send testcase to backend (url %s): %s", tcs.uri, exc)
            return
        if test_id:
            self.denoise(test_id, tcs)

    def denoise(self, test_id: str, tcs: TestCaseReq) -> None:
        """Run a captured request again and send the response to find noisy fields."""
        time.sleep(self.denoise_delay)
        app = self.config.app
        kind = _kind(tcs.type)
        try:
            if kind == Kind.HTTP.value:
                resp = self.simulate(
                    TestCase(
                        id=test_id,
                        captured=tcs.captured,
                        uri=tcs.uri,
                        http_req=tcs.http_req,
                        deps=list(tcs.deps),
                        mocks=list(tcs.mocks),
                    )
                )
                test_req = TestReq(
                    id=test_id,
                    app_id=app.name,
                    resp=resp,
                    test_case_path=app.test_path,
                    mock_path=app.mock_path,
                    type=Kind.HTTP.value,
                )
            elif kind == Kind.GRPC_EXPORT.value:
                grpc_resp = self._simulate_grpc(
                    TestCase(
                        id=test_id,
                        captured=tcs.captured,
                        deps=list(tcs.deps),
                        mocks=list(tcs.mocks),
                        grpc_req=tcs.grpc_req,
                    )
                )
                test_req = TestReq(
                    id=test_id,
                    app_id=app.name,
                    grpc_resp=grpc_resp,
                    test_case_path=app.test_path,
                    mock_path=app.mock_path,
                    type=Kind.GRPC_EXPORT.value,
                )
            else:
                return
            self.server.post_denoise(test_req)
        except KeployError as exc:
            logger.error("failed to de-noise testcase %s: %s", test_id, exc)

    # testing

    def simulate(self, tc: TestCase) -> HttpResp:
        """Send a recorded HTTP request to the application and return its response."""
        app = self.config.app
        with self._bound(tc):
            slot = ResponseSlot()
            self.put_resp(tc.id, slot)
            try:
                headers = {name: ", ".join(values) for name, values in tc.http_req.header.items()}
                headers[TEST_ID_HEADER] = tc.id
                headers["Connection"] = "close"
                try:
                    reply = self.session.request(
                        tc.http_req.method or "GET",
                        f"http://{app.host}:{app.port}{tc.http_req.url}",
                        headers=headers,
                        data=tc.http_req.body.encode("utf-8", "surrogateescape"),
                        timeout=app.timeout,
                    )
                    _ = reply.content
                except requests.RequestException as exc:
                    raise KeployError(f"failed sending testcase request to app: {exc}") from exc
                if not slot.done.wait(app.timeout):
                    raise KeployError(f"no response was recorded for testcase {tc.id}")
                resp = self.get_resp(tc.id).resp
                return resp if isinstance(resp, HttpResp) else HttpResp()
            finally:
                self._drop_resp(tc.id)

    def _simulate_grpc(self, tc: TestCase) -> GrpcResp:
        app = self.config.app
        with self._bound(tc):
            slot = ResponseSlot(resp=GrpcResp())
            self.put_resp(tc.id, slot)
            try:
                port = app.port if app.port.startswith(":") else ":" + app.port
                if self.grpc_invoker is None:
                    logger.error("failed to simulate grpc request %s: no grpc invoker set", tc.id)
                else:
                    try:
                        self.grpc_invoker(
                            tc.grpc_req.body, f"tid:{tc.id}", "localhost" + port, tc.grpc_req.method
                        )
                    except Exception as exc:  # the invoker may fail in any way
                        logger.error("failed to simulate grpc request %s: %s", tc.id, exc)
                    else:
                        slot.done.wait(app.timeout)
                resp = self.get_resp(tc.id).resp
                return resp if isinstance(resp, GrpcResp) else GrpcResp()
            finally:
                self._drop_resp(tc.id)

    def check(self, run_id: str, tc: TestCase) -> bool:
        """Simulate one test case and return whether the server says it passed."""
        app = self.config.app
        kind = _kind(tc.type)
        try:
            if kind == Kind.HTTP.value:
                test_req = TestReq(
                    id=tc.id,
                    app_id=app.name,
                    run_id=run_id,
                    resp=self.simulate(tc),
                    test_case_path=app.test_path,
                    mock_path=app.mock_path,
                    type=Kind.HTTP.value,
                )
            elif kind == Kind.GRPC_EXPORT.value:
                test_req = TestReq(
                    id=tc.id,
                    app_id=app.name,
                    run_id=run_id,
                    grpc_resp=self._simulate_grpc(tc),
                    test_case_path=app.test_path,
                    mock_path=app.mock_path,
                    type=Kind.GRPC_EXPORT.value,
                )
            else:
                logger.error("unknown testcase type %r for testcase %s", kind, tc.id)
                return False
            return self.server.post_test(test_req)
        except KeployError as exc:
            logger.error("testcase %s failed (url %s): %s", tc.id, tc.uri, exc)
            return False

    def _fetch(self, kind: Kind) -> list[TestCase]:
        try:
            return self.server.fetch(kind)
        except ServerError as exc:
            logger.error("failed to fetch testcases from keploy cloud: %s", exc)
            return []

    def test(self) -> bool | None:
        """Run every recorded test case; return the overall result, or None if the run failed."""
        delay = self.config.app.delay
        logger.info("test starting in %ss", delay)
        time.sleep(delay)
        cases = self._fetch(Kind.HTTP) + self._fetch(Kind.GRPC_EXPORT)
        total = len(cases)
        try:
            run_id = self.server.start_run(total)
        except ServerError as exc:
            logger.error("failed to start test run: %s", exc)
            return None

        logger.info("starting test execution (id %s, total tests %d)", run_id, total)

        def run(numbered: tuple[int, TestCase]) -> bool:
            number, tc = numbered
            logger.info("testing %d of %d (testcase id %s)", number, total, tc.id)
            ok = self.check(run_id, tc)
            logger.info("result (testcase id %s): passed=%s", tc.id, ok)
            return ok

        with ThreadPoolExecutor(max_workers=MAX_PARALLEL_TESTS) as pool:
            results = list(pool.map(run, enumerate(cases, start=1)))
        passed = all(results)

        try:
            self.server.end_run(run_id, passed)
        except ServerError as exc:
            logger.error("failed to end test run: %s", exc)
            return None
        logger.info("test run completed (run id %s): passed overall=%s", run_id, passed)
        self._results.put(passed)
        return passed

    def wait_result(self, timeout: float | None = None) -> bool:
        """Block until a test run finishes and return whether it passed."""
        try:
            return self._results.get(timeout=timeout)
        except queue.Empty:
            raise TimeoutError("keploy test run did not finish in time") from None

    def get(self, test_id: str) -> TestCase | None:
        """Return one recorded test case, or None if it cannot be fetched."""
        try:
            return self.server.get_testcase(test_id)
        except ServerError as exc:
            logger.error("failed to fetch testcases from keploy cloud: %s", exc)
            return None