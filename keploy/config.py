"""Configuration of the SDK: the application under test and the keploy server."""

from __future__ import annotations

import os
import re
from collections.abc import Iterable
from dataclasses import dataclass, field, replace

DEFAULT_SERVER_URL = "http://localhost:6789/api"


def _finds(pattern: str, text: str) -> bool:
    """True when pattern finds a non-empty match in text."""
    match = re.search(pattern, text)
    return bool(match and match.group(0))


@dataclass
class Filter:
    """Rules deciding which captured HTTP requests become test cases."""

    accept_url_regex: str = ""
    header_regex: list[str] | None = None
    reject_url_regex: list[str] | None = None

    def header_allowed(self, headers: Iterable[str]) -> bool:
        """True when no header rules are set or a header name matches one of them."""
        if self.header_regex is None:
            return True
        names = list(headers)
        return any(_finds(pattern, name) for pattern in self.header_regex for name in names)

    def url_allowed(self, url: str) -> bool:
        """True when the URL matches none of the reject rules."""
        if self.reject_url_regex is None:
            return True
        return not any(_finds(pattern, url) for pattern in self.reject_url_regex)

    def accepts(self, uri: str) -> bool:
        """True when no accept rule is set or the URI matches it."""
        if not self.accept_url_regex:
            return True
        return _finds(self.accept_url_regex, uri)


@dataclass
class AppConfig:
    """The application under test. Delay and timeout are in seconds."""

    name: str = ""
    host: str = "0.0.0.0"
    port: str = ""
    delay: float = 5.0
    timeout: float = 60.0
    filter: Filter = field(default_factory=Filter)
    test_path: str = ""
    mock_path: str = ""


@dataclass
class ServerConfig:
    """Where the keploy server is and how to talk to it."""

    url: str = DEFAULT_SERVER_URL
    license_key: str = ""
    async_calls: bool = False


def _resolve(path: str, base: str, leaf: str) -> str:
    if not path:
        return f"{base}/keploy/{leaf}"
    if path.startswith("/"):
        return path
    return os.path.normpath(os.path.join(base, path))


@dataclass
class Config:
    """Complete SDK configuration."""

    app: AppConfig = field(default_factory=AppConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    def validate(self) -> Config:
        """Return self, or raise ValueError when a required field is missing."""
        missing = [name for name, value in (("name", self.app.name), ("port", self.app.port)) if not value]
        if missing:
            raise ValueError("conf missing important field: " + ", ".join(missing))
        return self

    def resolved(self, cwd: str | None = None) -> Config:
        """Return a copy whose test and mock paths are absolute.

        Empty paths default to keploy/tests and keploy/mocks under cwd;
        relative paths are taken relative to cwd.
        """
        base = os.getcwd() if cwd is None else cwd
        app = replace(
            self.app,
            test_path=_resolve(self.app.test_path, base, "tests"),
            mock_path=_resolve(self.app.mock_path, base, "mocks"),
        )
        return replace(self, app=app)