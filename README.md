# keploy

Record the API calls your application serves, together with the outputs of the
dependencies it talks to, and replay them later as regression tests.

The package is a client library: it works against a Keploy server, which stores
test cases and mocks and compares recorded responses with fresh ones.

## Modes

The SDK runs in one of three modes, given by `keploy.mode.Mode`:

- **record** – every request handled by the instrumented application is captured
  as a test case, along with the outputs of its dependency calls. The test case is
  sent to the server; if the server gives it an id, the request is sent to the
  application once more and that second response is posted for de-noising.
- **test** – test cases are fetched from the server and replayed against the
  running application. Dependency calls are answered from the recorded mocks
  instead of reaching the real database. Each result is reported to the server.
- **off** – the SDK stays out of the way and every call goes straight through.

The mode is read from the `KEPLOY_MODE` environment variable when `keploy.mode`
is imported, or set in code:

```python
from keploy.mode import Mode, set_mode, get_mode

set_mode(Mode.TEST)
assert get_mode() is Mode.TEST
```

An unknown mode raises `keploy.errors.InvalidModeError`.

## Instrumenting a WSGI application

```python
from keploy.app import Keploy
from keploy.config import AppConfig, Config
from keploy.middleware import KeployMiddleware

k = Keploy(Config(app=AppConfig(name="sample-app", port="8080")))
application = KeployMiddleware(wsgi_app, k)
```

`Config.validate` requires an application name and port; `Config.resolved`
turns empty test and mock paths into `keploy/tests` and `keploy/mocks` under the
working directory. `ServerConfig.url` defaults to `http://localhost:6789/api`.

`KeployMiddleware` takes an optional `params_getter`, called with the request
environ, that returns the router's URL parameters; they are used to turn the
path into a pattern such as `/users/:id` (see `url_path` and `url_params`).

`config.Filter` decides which HTTP requests are recorded: `header_regex`
patterns of which a header name must match one, `reject_url_regex` patterns that
reject a URL, and `accept_url_regex`, a pattern the URI must match.

In test mode, creating a `Keploy` starts the test run in a background thread
(pass `autostart=False` to call `Keploy.test()` yourself). `Keploy.wait_result`
blocks until a run finishes and returns whether every test case passed.

## Dependency calls

While a request is handled, the middleware binds a `keploy.mode.Context` to it
(`keploy.mode.bind_context`). Anything that runs inside can use
`keploy.deps.process_dep(meta, *outputs)`: in record mode it stores the outputs
in the context; in test mode it returns the recorded outputs, one per argument.
Outputs are serialised with `pickle`.

`keploy.ksql` wraps a database driver object:

- `keploy.ksql.driver.Driver(real_driver).open(dsn)` returns a `Conn`; in test
  mode no real connection is opened.
- `Conn` provides `begin`, `close`, `prepare`, `open_connector`, `ping`,
  `begin_tx`, `prepare_context`, `exec_context` and `query_context`.
- `keploy.ksql.statement.Stmt`, `keploy.ksql.rows.Rows` and
  `keploy.ksql.transaction.Tx` / `Result` record and replay statements, result
  rows, transactions and execution results.

Outside a bound context, or with the mode off, calls go straight to the driver.

Recorded mocks can be exported through a client object with a
`put_mock(path, mock)` method, set with `keploy.mocks.set_mock_client`.

## Errors from mocked calls

Errors raised by dependencies are stored as `keploy.errors.KError` and turned
back into exceptions when replayed:

```python
from keploy.errors import KError, convert_kerror

stored = KError(ValueError("boom")).encode()
restored = KError.decode(stored)
```

`convert_kerror` maps stored driver errors back to `BadConnectionError`,
`RemoveArgumentError`, `SkipError` and `EndOfRows`; the text `"nil"` means no
error.

## What this package does not do

- It does not include or start a Keploy server; one must be running at
  `ServerConfig.url`.
- It has no gRPC client of its own. To replay gRPC test cases, pass
  `grpc_invoker` to `Keploy`; it is called with the request body, the metadata
  `"tid:<id>"`, the target and the method.
- It provides a WSGI middleware only; there are no adapters for other web
  frameworks.
- It has no command-line interface.