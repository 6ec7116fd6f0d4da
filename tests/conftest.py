from __future__ import annotations

import json

import pytest
import yaml

from rhinospider.config import load_config
from rhinospider.fetch import FetchResponse, TransportError
from rhinospider.storage import init_db

_RS_ENV = (
    "RS_CONFIG_PATH",
    "RS_PROXY_URL",
    "RS_PROXY_PASSWORD",
    "RS_PRINCIPAL_ID",
    "RS_SEARCH_PROXY_URL",
    "RS_SEARCH_RATE_LIMIT",
    "RS_WORKER_CONCURRENCY",
    "RS_TOPICS_FILE",
    "RS_AI_BASE_URL",
    "RS_AI_API_KEY",
    "RS_LOG_FILE",
    "RS_LOG_LEVELS",
)


def respond(status: int = 200, body: str | bytes | dict | list = "", headers: dict | None = None) -> FetchResponse:
    if isinstance(body, (dict, list)):
        body = json.dumps(body)
    if isinstance(body, str):
        body = body.encode("utf-8")
    return FetchResponse(
        url="",
        status=status,
        body=body,
        headers={key.lower(): value for key, value in (headers or {}).items()},
    )


class FakeFetch:
    """Scripted stand-in for ``fetch_url``.

    Routes match the exact URL first, then the URL without its query string.
    A route may be a response, an exception to raise, or a callable taking
    ``(url, kwargs)``. Unrouted URLs raise ``TransportError``.
    """

    def __init__(self) -> None:
        self.routes: dict[str, object] = {}
        self.calls: list[tuple[str, dict]] = []

    def add(self, url: str, route: object) -> None:
        self.routes[url] = route

    def requested(self, prefix: str = "") -> list[str]:
        return [url for url, _ in self.calls if url.startswith(prefix)]

    def __call__(self, url: str, **kwargs) -> FetchResponse:
        self.calls.append((url, kwargs))
        route = self.routes.get(url)
        if route is None:
            route = self.routes.get(url.split("?", 1)[0])
        if route is None:
            raise TransportError(f"GET {url} failed: no route")
        if isinstance(route, BaseException):
            raise route
        if callable(route):
            return route(url, kwargs)
        return route


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    for name in _RS_ENV:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("RS_DATA_DIR", str(tmp_path / "data"))


@pytest.fixture
def conn(tmp_path):
    connection = init_db(str(tmp_path / "data" / "state.sqlite3"))
    yield connection
    connection.close()


@pytest.fixture
def fake_fetch():
    return FakeFetch()


@pytest.fixture
def make_config(tmp_path):
    def _make(overrides: dict | None = None):
        data: dict = {
            "paths": {
                "data_dir": str(tmp_path / "data"),
                "state_db": str(tmp_path / "data" / "state.sqlite3"),
            }
        }
        for section, values in (overrides or {}).items():
            data.setdefault(section, {}).update(values)
        path = tmp_path / "config.yml"
        path.write_text(yaml.safe_dump(data), encoding="utf-8")
        return load_config(str(path))

    return _make
