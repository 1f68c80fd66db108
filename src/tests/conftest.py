# src/tests/conftest.py
import json
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Tuple, Union
from unittest.mock import AsyncMock

import httpx
import pytest

from sfdc_bulk.core.config import Settings
from sfdc_bulk.salesforce.auth import AccessTokenAuth
from sfdc_bulk.salesforce.client import SalesforceApiClient

INSTANCE_URL = "https://test.my.salesforce.com"
API_VERSION = "v63.0"
BASE_PATH = f"/services/data/{API_VERSION}"

Responder = Union[httpx.Response, Callable[[httpx.Request], httpx.Response]]


class FakeSalesforce:
    """
    Programmable stand-in for the Salesforce REST endpoints, served through httpx.MockTransport.
    Each route answers with its queued responses in order; the last one repeats.
    Unrouted requests get a 404.
    """

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self._routes: Dict[Tuple[str, str], List[Responder]] = defaultdict(list)

    def add(self, method: str, path: str, *responses: Responder) -> None:
        self._routes[(method.upper(), f"{BASE_PATH}{path}")].extend(responses)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self._routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, json=[{"errorCode": "NOT_FOUND", "message": request.url.path}])
        responder = queue.pop(0) if len(queue) > 1 else queue[0]
        return responder(request) if callable(responder) else responder

    def calls(self, method: str, path: str) -> List[httpx.Request]:
        full_path = f"{BASE_PATH}{path}"
        return [r for r in self.requests if r.method == method.upper() and r.url.path == full_path]

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


def job_json(job_id: str, state: str, **extra: Any) -> Dict[str, Any]:
    body = {"id": job_id, "state": state, "operation": "insert", "object": "Account"}
    body.update(extra)
    return body


def csv_response(body: str, locator: Optional[str] = None, count: Optional[int] = None) -> httpx.Response:
    headers = {"Content-Type": "text/csv"}
    if locator is not None:
        headers["Sforce-Locator"] = locator
    if count is not None:
        headers["Sforce-Numberofrecords"] = str(count)
    return httpx.Response(200, headers=headers, text=body)


def request_json(request: httpx.Request) -> Any:
    return json.loads(request.content.decode("utf-8"))


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        SALESFORCE_INSTANCE_URL=INSTANCE_URL,
        SALESFORCE_ACCESS_TOKEN="test_access_token",
        SALESFORCE_API_VERSION=API_VERSION,
        INGEST_POLL_INTERVAL=0.01,
        QUERY_POLL_INTERVAL=0.01,
        LOG_FILENAME="",
    )


@pytest.fixture
def mock_salesforce_auth_instance():
    mock_auth = AsyncMock(spec=AccessTokenAuth)
    mock_auth.get_auth_details = AsyncMock(return_value=("test_access_token", INSTANCE_URL))
    return mock_auth


@pytest.fixture
def fake_salesforce() -> FakeSalesforce:
    return FakeSalesforce()


@pytest.fixture
async def api_client(fake_salesforce: FakeSalesforce, mock_salesforce_auth_instance, test_settings: Settings):
    http_client = httpx.AsyncClient(transport=fake_salesforce.transport())
    client = SalesforceApiClient(mock_salesforce_auth_instance, test_settings, http_client)
    yield client
    await http_client.aclose()
