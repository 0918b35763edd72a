"""HTTP client for the keploy server's regression API."""

from __future__ import annotations

import base64
import binascii
import json
from enum import Enum
from typing import Any

import requests

from .config import Config
from .errors import KeployError
from .models import Kind, TestCase, TestCaseReq, TestReq

PAGE_SIZE = 25


class ServerError(KeployError):
    """A request to the keploy server failed or returned something unreadable."""


def _kind(value: Any) -> str:
    return value.value if isinstance(value, Enum) else str(value)


def _is_multipart(header: dict[str, list[str]]) -> bool:
    return "multipart/form-data" in ", ".join(header.get("Content-Type", []))


def _b64encode(text: str) -> str:
    return base64.b64encode(text.encode("utf-8", "surrogateescape")).decode("ascii")


def _b64decode(text: str) -> str:
    try:
        raw = base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ServerError(f"failed to decode the base64 encoded request body: {exc}") from exc
    return raw.decode("utf-8", "surrogateescape")


class ServerClient:
    """Talks to the keploy server on behalf of one configured application."""

    def __init__(self, config: Config, session: requests.Session | None = None) -> None:
        self.config = config
        self.session = session or requests.Session()

    @property
    def _base(self) -> str:
        return self.config.server.url

    def _request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        payload: Any = None,
    ) -> requests.Response:
        headers: dict[str, str] = {}
        if self.config.server.license_key:
            headers["key"] = self.config.server.license_key
        data = None
        if payload is not None:
            headers["Content-Type"] = "application/json"
            data = json.dumps(payload)
        try:
            return self.session.request(
                method,
                url,
                params=params,
                data=data,
                headers=headers,
                timeout=self.config.app.timeout,
            )
        except requests.RequestException as exc:
            raise ServerError(f"failed to send {method} request: {exc}") from exc

    def _get(self, url: str, params: dict[str, Any] | None = None) -> requests.Response:
        resp = self._request("GET", url, params=params)
        if resp.status_code != 200:
            raise ServerError(f"failed to send get request: {resp.status_code} {resp.reason}")
        return resp

    @staticmethod
    def _json(resp: requests.Response) -> Any:
        try:
            return resp.json()
        except ValueError as exc:
            raise ServerError(f"failed to read response from keploy server: {exc}") from exc

    def _json_object(self, resp: requests.Response) -> dict[str, Any]:
        data = self._json(resp)
        if not isinstance(data, dict):
            raise ServerError("unexpected response from keploy server: expected an object")
        return data

    def start_run(self, total: int) -> str:
        """Open a test run for total test cases and return its id."""
        app = self.config.app
        resp = self._get(
            f"{self._base}/regression/start",
            params={
                "app": app.name,
                "total": total,
                "testCasePath": app.test_path,
                "mockPath": app.mock_path,
            },
        )
        return str(self._json_object(resp).get("id") or "")

    def end_run(self, run_id: str, passed: bool) -> None:
        """Close the test run with its overall result."""
        self._get(
            f"{self._base}/regression/end",
            params={"status": "true" if passed else "false", "id": run_id},
        )

    def fetch(self, kind: Kind | str) -> list[TestCase]:
        """Return every recorded test case of the given kind, page by page."""
        app = self.config.app
        cases: list[TestCase] = []
        offset = 0
        while True:
            resp = self._get(
                f"{self._base}/regression/testcase",
                params={
                    "app": app.name,
                    "offset": offset,
                    "limit": PAGE_SIZE,
                    "testCasePath": app.test_path,
                    "mockPath": app.mock_path,
                    "reqType": _kind(kind),
                },
            )
            page = self._json(resp) or []
            if not isinstance(page, list):
                raise ServerError("unexpected response from keploy server: expected a list")
            cases.extend(TestCase.from_dict(item) for item in page)
            if len(page) < PAGE_SIZE or resp.headers.get("EOF") == "true":
                break
            offset += PAGE_SIZE

        for case in cases:
            if _is_multipart(case.http_req.header):
                case.http_req.body = _b64decode(case.http_req.body)
        return cases

    def get_testcase(self, test_id: str) -> TestCase:
        """Return one recorded test case."""
        resp = self._get(f"{self._base}/regression/testcase/{test_id}")
        return TestCase.from_dict(self._json_object(resp))

    def post_testcase(self, tcs: TestCaseReq) -> str:
        """Store a captured test case; return the id the server gave it, or "".

        Multipart HTTP request bodies are sent base64 encoded; tcs is left unchanged.
        """
        payload = tcs.to_dict()
        if _kind(tcs.type) == Kind.HTTP.value and _is_multipart(tcs.http_req.header):
            payload["http_req"]["body"] = _b64encode(tcs.http_req.body)
        resp = self._request("POST", f"{self._base}/regression/testcase", payload=payload)
        return str(self._json_object(resp).get("id") or "")

    def post_test(self, test_req: TestReq) -> bool:
        """Send a simulated response for comparison; return whether it passed."""
        resp = self._request("POST", f"{self._base}/regression/test", payload=test_req.to_dict())
        return bool(self._json_object(resp).get("pass"))

    def post_denoise(self, test_req: TestReq) -> None:
        """Send a second response of a test case so noisy fields can be found."""
        self._request("POST", f"{self._base}/regression/denoise", payload=test_req.to_dict())