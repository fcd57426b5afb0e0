import json
from typing import Any, Callable, Dict, List, Optional, Union


class FakeResponse:
    """Stands in for an aiohttp response used as an async context manager."""

    def __init__(self, status: int = 200, body: Any = None, headers: Optional[Dict[str, str]] = None):
        self.status = status
        self.headers = {"Content-Type": "application/json"}
        self.headers.update(headers or {})
        if body is None:
            self._text = ""
        elif isinstance(body, str):
            self._text = body
        else:
            self._text = json.dumps(body)

    async def text(self) -> str:
        return self._text

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


Handler = Callable[[str, str, Dict[str, Any]], Union[FakeResponse, Exception]]


class FakeSession:
    """
    Records every request. `responses` is either a list consumed in order
    or a callable of (method, url, kwargs).
    """

    def __init__(self, responses: Union[List[Any], Handler]):
        self.responses = responses
        self.calls: List[Dict[str, Any]] = []
        self.closed = False

    def request(self, method: str, url: str, **kwargs):
        self.calls.append({"method": method, "url": url, **kwargs})
        if callable(self.responses):
            result = self.responses(method, url, kwargs)
        else:
            result = self.responses.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    async def close(self):
        self.closed = True


class FakeTokenProvider:
    def __init__(self, token: str = "test-token"):
        self.token = token
        self.calls = 0

    async def get_token(self) -> str:
        self.calls += 1
        return self.token


class RecordingSleep:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(float(seconds))


class ScriptedClient:
    """Replaces AsyncAccClient in fetcher tests; `handler` maps a RequestSpec to a body."""

    def __init__(self, handler: Callable[[Any], Any]):
        self.handler = handler
        self.specs: List[Any] = []

    async def call(self, spec):
        self.specs.append(spec)
        result = self.handler(spec)
        if isinstance(result, Exception):
            raise result
        return result


def item(urn: str, name: str = "", **attributes) -> Dict[str, Any]:
    return {
        "type": "items",
        "id": urn,
        "attributes": {"displayName": name or urn, **attributes},
    }


def list_items_body(items: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "data": {
            "type": "commands",
            "relationships": {"resources": {"data": items}},
        }
    }


def version(item_urn: str, number: int = 1, **fields) -> Dict[str, Any]:
    return {
        "urn": f"{item_urn}?version={number}",
        "itemUrn": item_urn,
        "number": number,
        **fields,
    }
