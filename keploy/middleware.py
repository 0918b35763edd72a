"""WSGI middleware that records requests as test cases and answers simulated ones."""

from __future__ import annotations

import io
import logging
import time
import threading
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import parse_qs

from .app import Keploy
from .mode import Context, Mode, bind_context, get_mode
from .models import GrpcReq, GrpcResp, HttpReq, HttpResp, Kind, TestCaseReq

logger = logging.getLogger("keploy")

_TEST_ID_KEY = "HTTP_KEPLOY_TEST_ID"


def _headers_from_environ(environ: Mapping[str, Any]) -> dict[str, list[str]]:
    headers: dict[str, list[str]] = {}
    for key, value in environ.items():
        if key.startswith("HTTP_"):
            name = key[5:]
        elif key in ("CONTENT_TYPE", "CONTENT_LENGTH"):
            if not value:
                continue
            name = key
        else:
            continue
        canonical = "-".join(part.capitalize() for part in name.split("_"))
        headers.setdefault(canonical, []).append(str(value))
    return headers


def _protocol(environ: Mapping[str, Any]) -> tuple[int, int]:
    proto = str(environ.get("SERVER_PROTOCOL", "HTTP/1.1"))
    try:
        major, minor = proto.split("/", 1)[1].split(".", 1)
        return int(major), int(minor)
    except (IndexError, ValueError):
        return 1, 1


@dataclass
class CapturedRequest:
    """The parts of an incoming request that a test case records."""

    method: str = "GET"
    path: str = "/"
    query: str = ""
    header: dict[str, list[str]] = field(default_factory=dict)
    proto_major: int = 1
    proto_minor: int = 1
    kctx: Context | None = None

    @property
    def url(self) -> str:
        return f"{self.path}?{self.query}" if self.query else self.path

    @classmethod
    def from_environ(cls, environ: Mapping[str, Any], kctx: Context | None = None) -> CapturedRequest:
        major, minor = _protocol(environ)
        return cls(
            method=str(environ.get("REQUEST_METHOD", "GET")),
            path=str(environ.get("PATH_INFO", "") or "/"),
            query=str(environ.get("QUERY_STRING", "")),
            header=_headers_from_environ(environ),
            proto_major=major,
            proto_minor=minor,
            kctx=kctx,
        )


def url_path(url: str, params: Mapping[str, str]) -> str:
    """Replace path segments equal to a URL parameter's value by ":name"."""
    result = url
    for name, value in params.items():
        result = result.replace(f"/{value}/", f"/:{name}/")
        suffix = f"/{value}"
        if result.endswith(suffix):
            result = result[: len(result) - len(suffix)] + f"/:{name}"
    return result


def url_params(query: str, params: Mapping[str, str]) -> dict[str, str]:
    """Merge the query parameters into the URL parameters, joining repeats with ", "."""
    result = dict(params)
    for name, values in parse_qs(query, keep_blank_values=True).items():
        text = result.get(name, "")
        for value in values:
            text = f"{text}, {value}" if text else value
        result[name] = text
    return result


def capture_http_tc(
    k: Keploy,
    request: CapturedRequest,
    req_body: bytes,
    resp: HttpResp,
    params: Mapping[str, str],
) -> threading.Thread | None:
    """Send a recorded HTTP exchange as a test case; return the worker doing it."""
    kctx = request.kctx
    if kctx is None:
        logger.error("failed to get keploy context")
        return None
    app = k.config.app
    return k.capture(
        TestCaseReq(
            captured=int(time.time()),
            app_id=app.name,
            uri=url_path(request.path, params),
            http_req=HttpReq(
                method=request.method,
                proto_major=request.proto_major,
                proto_minor=request.proto_minor,
                url=request.url,
                url_params=url_params(request.query, params),
                header={name: list(values) for name, values in request.header.items()},
                body=req_body.decode("utf-8", "surrogateescape"),
            ),
            http_resp=resp,
            deps=list(kctx.deps),
            test_case_path=app.test_path,
            mock_path=app.mock_path,
            mocks=list(kctx.mock),
            type=Kind.HTTP.value,
        )
    )


def capture_grpc_tc(
    k: Keploy, kctx: Context | None, req: GrpcReq, resp: GrpcResp
) -> threading.Thread | None:
    """Send a recorded gRPC exchange as a test case; return the worker doing it."""
    if kctx is None:
        logger.error("failed to get keploy context")
        return None
    app = k.config.app
    return k.capture(
        TestCaseReq(
            captured=int(time.time()),
            app_id=app.name,
            grpc_req=req,
            grpc_resp=resp,
            deps=list(kctx.deps),
            test_case_path=app.test_path,
            mock_path=app.mock_path,
            mocks=list(kctx.mock),
            type=Kind.GRPC_EXPORT.value,
        )
    )


def _read_body(environ: dict[str, Any]) -> bytes:
    stream = environ.get("wsgi.input")
    try:
        length = int(environ.get("CONTENT_LENGTH") or 0)
    except ValueError:
        length = 0
    body = stream.read(length) if stream is not None and length > 0 else b""
    environ["wsgi.input"] = io.BytesIO(body)
    return body


def _apply_error(message: str, status: int, body: str) -> tuple[int, str]:
    """Read "code=..., message=..." style errors into a status and a body."""
    for part in message.split(", "):
        if "code" in part:
            try:
                status = int(part[5:])
            except ValueError:
                logger.info("failed to convert status code from string to int: %r", part)
        elif "message" in part:
            body = part[8:]
    return status, body


class _Recorder:
    def __init__(self, start_response: Callable[..., Any]) -> None:
        self._start_response = start_response
        self.status = 200
        self.headers: list[tuple[str, str]] = []
        self.written: list[bytes] = []

    def start_response(self, status: str, headers: list[tuple[str, str]], exc_info: Any = None):
        try:
            self.status = int(status.split(" ", 1)[0])
        except ValueError:
            logger.info("failed to read status code from %r", status)
        self.headers = list(headers)
        write = self._start_response(status, headers, exc_info)

        def _write(data: bytes) -> None:
            self.written.append(data)
            write(data)

        return _write

    def header_map(self) -> dict[str, list[str]]:
        result: dict[str, list[str]] = {}
        for name, value in self.headers:
            result.setdefault(name, []).append(value)
        return result


class KeployMiddleware:
    """Wraps a WSGI application to record test cases and answer simulated requests.

    params_getter returns the router's URL parameters for a request environ.
    """

    def __init__(
        self,
        app: Callable[..., Iterable[bytes]],
        keploy: Keploy | None,
        params_getter: Callable[[Mapping[str, Any]], Mapping[str, str]] | None = None,
    ) -> None:
        self.app = app
        self.keploy = keploy
        self.params_getter = params_getter

    def __call__(self, environ: dict[str, Any], start_response: Callable[..., Any]) -> Iterable[bytes]:
        k = self.keploy
        mode = get_mode()
        test_id = str(environ.get(_TEST_ID_KEY, ""))
        if k is None or mode == Mode.OFF or (mode == Mode.TEST and not test_id):
            return self.app(environ, start_response)

        if test_id:
            kctx = Context(
                mode=Mode.TEST,
                test_id=test_id,
                deps=list(k.get_dependencies(test_id) or []),
                mock=list(k.get_mocks(test_id) or []),
            )
            req_body = b""
        else:
            kctx = Context(mode=Mode.RECORD)
            req_body = _read_body(environ)
        request = CapturedRequest.from_environ(environ, kctx)

        recorder = _Recorder(start_response)
        chunks: list[bytes] = []
        error: Exception | None = None
        with bind_context(kctx):
            try:
                result = self.app(environ, recorder.start_response)
                try:
                    chunks.extend(result)
                finally:
                    close = getattr(result, "close", None)
                    if close is not None:
                        close()
            except Exception as exc:
                error = exc

        status = recorder.status
        body = b"".join(recorder.written + chunks).decode("utf-8", "surrogateescape")
        if error is not None:
            status, body = _apply_error(str(error), status, body)
        resp = HttpResp(status_code=status, header=recorder.header_map(), body=body)

        if test_id:
            slot = k.get_resp(test_id)
            slot.resp = resp
            k.put_resp(test_id, slot)
            slot.done.set()
        else:
            params = dict(self.params_getter(environ)) if self.params_getter else {}
            capture_http_tc(k, request, req_body, resp, params)

        if error is not None:
            raise error
        return chunks