from __future__ import annotations

from types import SimpleNamespace
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

import httpx
import pytest

from worldpop_apis.config import WorldPopConfig
from worldpop_apis.worldpop import WorldPopClient

Script = Union[Callable[[httpx.Request], Any], Sequence[Any]]


class FakeWorldPop:
    """In-process stand-in for the WorldPop services and task endpoints.

    ``submit`` and ``poll`` are either a callable taking the request or a list
    of bodies served in order; the last body repeats once the list runs out.
    A body may be a dict (served as JSON 200) or a ready ``httpx.Response``.
    """

    def __init__(
        self,
        submit: Script = (),
        poll: Script = (),
        catalogue: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.submit_script = submit if callable(submit) else list(submit)
        self.poll_script = poll if callable(poll) else list(poll)
        self.catalogue = catalogue or {"data": [{"alias": "stats"}]}
        self.submissions: List[httpx.Request] = []
        self.polls: List[httpx.Request] = []

    @property
    def calls(self) -> int:
        return len(self.submissions) + len(self.polls)

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.endswith("/services/stats"):
            self.submissions.append(request)
            body = self._next(self.submit_script, request)
        elif "/tasks/" in path:
            self.polls.append(request)
            body = self._next(self.poll_script, request)
        elif path.endswith("/services"):
            body = self.catalogue
        else:
            return httpx.Response(404, json={"error": True})
        if isinstance(body, httpx.Response):
            return body
        return httpx.Response(200, json=body)

    def _next(self, script: Any, request: httpx.Request) -> Any:
        if callable(script):
            return script(request)
        if not script:
            raise AssertionError(f"unexpected request to {request.url}")
        return script.pop(0) if len(script) > 1 else script[0]


def finished(total: Optional[float] = 1000.0, taskid: Optional[str] = None, **data: Any) -> Dict[str, Any]:
    payload_data: Dict[str, Any] = dict(data)
    if total is not None:
        payload_data["total_population"] = total
    body: Dict[str, Any] = {
        "status": "finished",
        "status_code": 200,
        "error": False,
        "error_message": None,
        "data": payload_data,
    }
    if taskid:
        body["taskid"] = taskid
    return body


def created(taskid: str = "task-1") -> Dict[str, Any]:
    return {
        "status": "created",
        "status_code": 200,
        "error": False,
        "error_message": None,
        "taskid": taskid,
    }


def failed(message: Optional[str] = "X") -> Dict[str, Any]:
    return {
        "status": "error",
        "status_code": 500,
        "error": True,
        "error_message": message,
    }


@pytest.fixture
def payloads() -> SimpleNamespace:
    return SimpleNamespace(finished=finished, created=created, failed=failed)


@pytest.fixture
def aoi() -> Dict[str, Any]:
    """Half a degree of longitude by a fifth of a degree of latitude."""
    return {
        "type": "FeatureCollection",
        "features": [
            {
                "type": "Feature",
                "properties": {},
                "geometry": {
                    "type": "Polygon",
                    "coordinates": [
                        [[10.0, 20.0], [10.5, 20.0], [10.5, 20.2], [10.0, 20.2], [10.0, 20.0]]
                    ],
                },
            }
        ],
    }


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def make_service() -> Callable[..., FakeWorldPop]:
    return FakeWorldPop


@pytest.fixture
def make_client(sleeps: List[float]) -> Callable[..., WorldPopClient]:
    def _make(service: FakeWorldPop, config: Optional[WorldPopConfig] = None, **kwargs: Any) -> WorldPopClient:
        async def fake_sleep(delay: float) -> None:
            sleeps.append(delay)

        http_client = httpx.AsyncClient(transport=httpx.MockTransport(service.handler))
        kwargs.setdefault("sleep", fake_sleep)
        return WorldPopClient(config or WorldPopConfig(), http_client=http_client, **kwargs)

    return _make
