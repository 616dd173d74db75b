import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import parse_qs, urlparse

import pytest
import requests

from tinybird_sdk.client import TinyB
from tinybird_sdk.git_branch import CI_BRANCH_ENV_VARS

API_HOST = "https://api.tinybird.test"
LOCAL_HOST = "http://localhost:7181"


@dataclass
class Call:
    method: str
    url: str
    headers: Dict[str, str]
    data: Any
    timeout: Optional[float]

    @property
    def path(self) -> str:
        return urlparse(self.url).path

    @property
    def query(self) -> Dict[str, List[str]]:
        return parse_qs(urlparse(self.url).query, keep_blank_values=True)


def make_response(status_code: int, body: Any = None, url: str = "", reason: Optional[str] = None) -> requests.Response:
    response = requests.Response()
    response.status_code = status_code
    response.reason = reason or {200: "OK", 204: "No Content"}.get(status_code, "Error")
    response.url = url
    response.encoding = "utf-8"
    if body is None:
        response._content = b""
    elif isinstance(body, (dict, list)):
        response._content = json.dumps(body).encode("utf-8")
        response.headers["Content-Type"] = "application/json"
    else:
        response._content = str(body).encode("utf-8")
        response.headers["Content-Type"] = "text/html"
    return response


@dataclass
class Route:
    method: str
    path: "re.Pattern[str]"
    responses: List[Any]
    hits: int = 0


@dataclass
class FakeTinybird:
    """Routes requests made through requests.Session to canned responses.

    Each route serves its responses in order and keeps repeating the last one.
    A response is a (status, body) tuple or an exception instance to raise.
    """

    routes: List[Route] = field(default_factory=list)
    calls: List[Call] = field(default_factory=list)

    def add(self, method: str, path: str, *responses: Any) -> "FakeTinybird":
        self.routes.append(Route(method, re.compile(path), list(responses)))
        return self

    def handle(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        call = Call(method, url, dict(kwargs.get("headers") or {}), kwargs.get("data"), kwargs.get("timeout"))
        self.calls.append(call)
        for route in self.routes:
            if route.method == method and route.path.fullmatch(call.path):
                response = route.responses[min(route.hits, len(route.responses) - 1)]
                route.hits += 1
                if isinstance(response, BaseException):
                    raise response
                status_code, body = response
                return make_response(status_code, body, url)
        raise AssertionError(f"Unexpected request {method} {url}")

    def calls_to(self, method: str, path: str) -> List[Call]:
        return [c for c in self.calls if c.method == method and re.fullmatch(path, c.path)]


@pytest.fixture
def tinybird(monkeypatch) -> FakeTinybird:
    fake = FakeTinybird()

    def request(session, method, url, **kwargs):
        return fake.handle(method, url, **kwargs)

    monkeypatch.setattr(requests.Session, "request", request)
    return fake


@pytest.fixture
def client() -> TinyB:
    return TinyB("p.admin-token", API_HOST)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for env_var in CI_BRANCH_ENV_VARS + ["TB_TOKEN", "TB_HOST", "TB_DISABLE_SSL_CHECKS", "TINYBIRD_DEBUG"]:
        monkeypatch.delenv(env_var, raising=False)


def multipart_parts(call: Call) -> List[Tuple[str, str]]:
    """(filename, content) pairs sent in a multipart body"""
    content_type = call.headers["Content-Type"]
    boundary = content_type.split("boundary=")[1]
    body = call.data.decode("utf-8")
    parts = []
    for chunk in body.split(f"--{boundary}")[1:-1]:
        headers, _, content = chunk.strip("\r\n").partition("\r\n\r\n")
        filename = re.search(r'filename="([^"]+)"', headers)
        parts.append((filename.group(1) if filename else "", content))
    return parts
