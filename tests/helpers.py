"""Test helpers: a fake Sankhya ERP behind httpx.MockTransport."""

import json
from typing import Any, Callable

import httpx

BASE_URL = "https://erp.test"


def entities_response(
    fields: list[str], rows: list[list[Any]], total: int | None = None
) -> dict[str, Any]:
    """loadRecords body in the positional format, None values left out."""
    entity = [
        {f"f{i}": {"$": value} for i, value in enumerate(row) if value is not None}
        for row in rows
    ]
    body: dict[str, Any] = {
        "metadata": {"fields": {"field": [{"name": name} for name in fields]}},
        "total": str(len(rows) if total is None else total),
    }
    if entity:
        body["entity"] = entity if len(entity) > 1 else entity[0]
    return {"status": "1", "responseBody": {"entities": body}}


class FakeSankhya:
    """
    Minimal ERP: counts logins and hands data requests to a swappable handler.
    """

    def __init__(self):
        self.login_calls = 0
        self.login_status = 200
        self.requests: list[httpx.Request] = []
        self.data_handler: Callable[[httpx.Request], httpx.Response] = (
            lambda request: httpx.Response(200, json=entities_response([], []))
        )

    def handle(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/login":
            self.login_calls += 1
            if self.login_status != 200:
                return httpx.Response(self.login_status, text="login failed")
            return httpx.Response(200, json={"bearerToken": f"token-{self.login_calls}"})

        self.requests.append(request)
        return self.data_handler(request)

    def respond_with(self, *responses: httpx.Response) -> None:
        """Serve responses in order, repeating the last one."""
        queue = list(responses)

        def handler(request: httpx.Request) -> httpx.Response:
            template = queue.pop(0) if len(queue) > 1 else queue[0]
            return httpx.Response(
                template.status_code, content=template.content, headers=template.headers
            )

        self.data_handler = handler

    def http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handle))

    def route_entities(self, bodies: dict[str, Any]) -> None:
        """Answer loadRecords by the requested rootEntity (a body or a callable)."""

        def handler(request: httpx.Request) -> httpx.Response:
            root = root_entity_of(request)
            if root not in bodies:
                return httpx.Response(200, json=entities_response([], []))
            body = bodies[root]
            return httpx.Response(200, json=body(request) if callable(body) else body)

        self.data_handler = handler

    def requests_for(self, root_entity: str) -> list[httpx.Request]:
        return [r for r in self.requests if root_entity_of(r) == root_entity]


def request_json(request: httpx.Request) -> dict[str, Any]:
    return json.loads(request.content) if request.content else {}


def root_entity_of(request: httpx.Request) -> str | None:
    return request_json(request).get("requestBody", {}).get("dataSet", {}).get("rootEntity")


def criteria_of(request: httpx.Request) -> str:
    data_set = request_json(request)["requestBody"]["dataSet"]
    return data_set["criteria"]["expression"]["$"]
