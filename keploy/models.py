"""Records exchanged with the keploy server: test cases, dependencies and mocks."""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Kind(str, Enum):
    """Kind of a recorded test case or mock."""

    HTTP = "Http"
    GENERIC = "Generic"
    SQL = "SQL"
    GRPC_EXPORT = "gRPC"


MOCK_VERSION = "api.keploy.io/v1beta2"
SQL_DB = "SQL_DB"
ERR_TYPE = "error"
INT_TYPE = "int"
TABLE_TYPE = "table"


def _kind_str(value: Any) -> str:
    return value.value if isinstance(value, Enum) else str(value)


def _b64(data: bytes | None) -> str | None:
    return None if data is None else base64.b64encode(data).decode("ascii")


def _unb64(text: str | None) -> bytes | None:
    return None if text is None else base64.b64decode(text)


def _headers(data: Any) -> dict[str, list[str]]:
    return {key: list(values or []) for key, values in (data or {}).items()}


@dataclass
class MockObject:
    """One encoded output of a dependency call."""

    type: str = ""
    data: bytes | None = None

    def _to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "data": _b64(self.data)}

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> MockObject:
        return cls(type=data.get("type") or "", data=_unb64(data.get("data")))


@dataclass
class SqlCol:
    """A column of a recorded SQL table."""

    name: str = ""
    type: str = ""

    def _to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "type": self.type}

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> SqlCol:
        return cls(name=data.get("name") or "", type=data.get("type") or "")


@dataclass
class SqlTable:
    """Columns and textual rows of a recorded SQL result set."""

    cols: list[SqlCol] = field(default_factory=list)
    rows: list[str] = field(default_factory=list)

    def _to_dict(self) -> dict[str, Any]:
        return {"cols": [col._to_dict() for col in self.cols], "rows": list(self.rows)}

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> SqlTable:
        return cls(
            cols=[SqlCol._from_dict(col) for col in data.get("cols") or []],
            rows=list(data.get("rows") or []),
        )


@dataclass
class MockSpec:
    """Body of a mock: metadata of the call and its recorded outputs."""

    metadata: dict[str, str] = field(default_factory=dict)
    objects: list[MockObject] = field(default_factory=list)
    err: list[str] = field(default_factory=list)
    type: str = ""
    table: SqlTable | None = None
    count: int = 0

    def _to_dict(self) -> dict[str, Any]:
        return {
            "metadata": dict(self.metadata),
            "objects": [obj._to_dict() for obj in self.objects],
            "err": list(self.err),
            "type": self.type,
            "table": None if self.table is None else self.table._to_dict(),
            "int": self.count,
        }

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> MockSpec:
        table = data.get("table")
        return cls(
            metadata=dict(data.get("metadata") or {}),
            objects=[MockObject._from_dict(obj) for obj in data.get("objects") or []],
            err=list(data.get("err") or []),
            type=data.get("type") or "",
            table=None if table is None else SqlTable._from_dict(table),
            count=int(data.get("int") or 0),
        )


@dataclass
class Mock:
    """A recorded dependency call."""

    version: str = MOCK_VERSION
    kind: str = ""
    name: str = ""
    spec: MockSpec = field(default_factory=MockSpec)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "kind": _kind_str(self.kind),
            "name": self.name,
            "spec": self.spec._to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Mock:
        spec = data.get("spec")
        return cls(
            version=data.get("version") or "",
            kind=data.get("kind") or "",
            name=data.get("name") or "",
            spec=MockSpec() if spec is None else MockSpec._from_dict(spec),
        )


@dataclass
class Dependency:
    """Encoded outputs of one external dependency call."""

    name: str = ""
    type: str = ""
    data: list[bytes | None] = field(default_factory=list)
    meta: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type,
            "meta": dict(self.meta),
            "data": [_b64(item) for item in self.data],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Dependency:
        return cls(
            name=data.get("name") or "",
            type=data.get("type") or "",
            data=[_unb64(item) for item in data.get("data") or []],
            meta=dict(data.get("meta") or {}),
        )


@dataclass
class HttpReq:
    """A captured HTTP request."""

    method: str = ""
    proto_major: int = 1
    proto_minor: int = 1
    url: str = ""
    url_params: dict[str, str] = field(default_factory=dict)
    header: dict[str, list[str]] = field(default_factory=dict)
    body: str = ""

    def _to_dict(self) -> dict[str, Any]:
        return {
            "method": self.method,
            "proto_major": self.proto_major,
            "proto_minor": self.proto_minor,
            "url": self.url,
            "url_params": dict(self.url_params),
            "header": _headers(self.header),
            "body": self.body,
        }

    @classmethod
    def _from_dict(cls, data: dict[str, Any] | None) -> HttpReq:
        data = data or {}
        return cls(
            method=data.get("method") or "",
            proto_major=int(data.get("proto_major", 1) or 0),
            proto_minor=int(data.get("proto_minor", 1) or 0),
            url=data.get("url") or "",
            url_params=dict(data.get("url_params") or {}),
            header=_headers(data.get("header")),
            body=data.get("body") or "",
        )


@dataclass
class HttpResp:
    """A captured HTTP response."""

    status_code: int = 0
    header: dict[str, list[str]] = field(default_factory=dict)
    body: str = ""

    def _to_dict(self) -> dict[str, Any]:
        return {"status_code": self.status_code, "header": _headers(self.header), "body": self.body}

    @classmethod
    def _from_dict(cls, data: dict[str, Any] | None) -> HttpResp:
        data = data or {}
        return cls(
            status_code=int(data.get("status_code") or 0),
            header=_headers(data.get("header")),
            body=data.get("body") or "",
        )


@dataclass
class GrpcReq:
    """A captured gRPC request."""

    body: str = ""
    method: str = ""

    def _to_dict(self) -> dict[str, Any]:
        return {"body": self.body, "method": self.method}

    @classmethod
    def _from_dict(cls, data: dict[str, Any] | None) -> GrpcReq:
        data = data or {}
        return cls(body=data.get("body") or "", method=data.get("method") or "")


@dataclass
class GrpcResp:
    """A captured gRPC response."""

    body: str = ""
    err: str = ""

    def _to_dict(self) -> dict[str, Any]:
        return {"body": self.body, "err": self.err}

    @classmethod
    def _from_dict(cls, data: dict[str, Any] | None) -> GrpcResp:
        data = data or {}
        return cls(body=data.get("body") or "", err=data.get("err") or "")


@dataclass
class TestCase:
    """A test case as stored by the keploy server."""

    __test__ = False

    id: str = ""
    created: int = 0
    updated: int = 0
    captured: int = 0
    cid: str = ""
    app_id: str = ""
    uri: str = ""
    http_req: HttpReq = field(default_factory=HttpReq)
    http_resp: HttpResp = field(default_factory=HttpResp)
    grpc_req: GrpcReq = field(default_factory=GrpcReq)
    grpc_resp: GrpcResp = field(default_factory=GrpcResp)
    deps: list[Dependency] = field(default_factory=list)
    all_keys: dict[str, list[str]] = field(default_factory=dict)
    anchors: dict[str, list[str]] = field(default_factory=dict)
    noise: list[str] = field(default_factory=list)
    mocks: list[Mock] = field(default_factory=list)
    type: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "created": self.created,
            "updated": self.updated,
            "captured": self.captured,
            "cid": self.cid,
            "app_id": self.app_id,
            "uri": self.uri,
            "http_req": self.http_req._to_dict(),
            "http_resp": self.http_resp._to_dict(),
            "grpc_req": self.grpc_req._to_dict(),
            "grpc_resp": self.grpc_resp._to_dict(),
            "deps": [dep.to_dict() for dep in self.deps],
            "all_keys": _headers(self.all_keys),
            "anchors": _headers(self.anchors),
            "noise": list(self.noise),
            "mocks": [mock.to_dict() for mock in self.mocks],
            "type": _kind_str(self.type),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TestCase:
        return cls(
            id=data.get("id") or "",
            created=int(data.get("created") or 0),
            updated=int(data.get("updated") or 0),
            captured=int(data.get("captured") or 0),
            cid=data.get("cid") or "",
            app_id=data.get("app_id") or "",
            uri=data.get("uri") or "",
            http_req=HttpReq._from_dict(data.get("http_req")),
            http_resp=HttpResp._from_dict(data.get("http_resp")),
            grpc_req=GrpcReq._from_dict(data.get("grpc_req")),
            grpc_resp=GrpcResp._from_dict(data.get("grpc_resp")),
            deps=[Dependency.from_dict(dep) for dep in data.get("deps") or []],
            all_keys=_headers(data.get("all_keys")),
            anchors=_headers(data.get("anchors")),
            noise=list(data.get("noise") or []),
            mocks=[Mock.from_dict(mock) for mock in data.get("mocks") or []],
            type=data.get("type") or "",
        )


@dataclass
class TestCaseReq:
    """A newly captured test case sent to the keploy server."""

    __test__ = False

    captured: int = 0
    app_id: str = ""
    uri: str = ""
    http_req: HttpReq = field(default_factory=HttpReq)
    http_resp: HttpResp = field(default_factory=HttpResp)
    grpc_req: GrpcReq = field(default_factory=GrpcReq)
    grpc_resp: GrpcResp = field(default_factory=GrpcResp)
    deps: list[Dependency] = field(default_factory=list)
    test_case_path: str = ""
    mock_path: str = ""
    mocks: list[Mock] = field(default_factory=list)
    type: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "captured": self.captured,
            "app_id": self.app_id,
            "uri": self.uri,
            "http_req": self.http_req._to_dict(),
            "http_resp": self.http_resp._to_dict(),
            "grpc_req": self.grpc_req._to_dict(),
            "grpc_resp": self.grpc_resp._to_dict(),
            "deps": [dep.to_dict() for dep in self.deps],
            "test_case_path": self.test_case_path,
            "mock_path": self.mock_path,
            "mocks": [mock.to_dict() for mock in self.mocks],
            "type": _kind_str(self.type),
        }


@dataclass
class TestReq:
    """The response of a simulated test case, sent for comparison."""

    __test__ = False

    id: str = ""
    app_id: str = ""
    run_id: str = ""
    resp: HttpResp = field(default_factory=HttpResp)
    grpc_resp: GrpcResp = field(default_factory=GrpcResp)
    test_case_path: str = ""
    mock_path: str = ""
    type: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "app_id": self.app_id,
            "run_id": self.run_id,
            "resp": self.resp._to_dict(),
            "grpc_resp": self.grpc_resp._to_dict(),
            "test_case_path": self.test_case_path,
            "mock_path": self.mock_path,
            "type": _kind_str(self.type),
        }