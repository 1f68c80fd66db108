# src/tests/test_client.py
import gzip
import json
from datetime import date

import httpx
import pytest

from sfdc_bulk.core.exceptions import AuthenticationError, RemoteError
from sfdc_bulk.salesforce.client import CSV_TYPE, SalesforceApiClient

from conftest import BASE_PATH, INSTANCE_URL


async def test_request_adds_auth_and_call_options(api_client, fake_salesforce):
    fake_salesforce.add("GET", "/limits", httpx.Response(200, json={"DailyApiRequests": {}}))

    assert await api_client.request_json("GET", "/limits") == {"DailyApiRequests": {}}

    request = fake_salesforce.requests[0]
    assert str(request.url) == f"{INSTANCE_URL}{BASE_PATH}/limits"
    assert request.headers["Authorization"] == "Bearer test_access_token"
    assert request.headers["Sforce-Call-Options"].startswith("client=")
    assert "Content-Encoding" not in request.headers


async def test_request_json_serializes_dates(api_client, fake_salesforce):
    fake_salesforce.add("POST", "/composite/sobjects", httpx.Response(200, json=[]))

    await api_client.request_json("POST", "/composite/sobjects", body={"CloseDate": date(2024, 3, 1)})

    assert json.loads(fake_salesforce.requests[0].content) == {"CloseDate": "2024-03-01"}


async def test_request_compresses_body(api_client, fake_salesforce, test_settings):
    fake_salesforce.add("PUT", "/jobs/ingest/750A/batches", httpx.Response(201))

    await api_client.request("PUT", "/jobs/ingest/750A/batches", content_type=CSV_TYPE,
                             body="Name\nAcme\n", compress=True, stage="upload")

    request = fake_salesforce.requests[0]
    assert request.headers["Content-Encoding"] == "gzip"
    assert request.headers["Accept-Encoding"] == "gzip"
    assert request.headers["Content-Type"] == CSV_TYPE
    assert gzip.decompress(request.content) == b"Name\nAcme\n"


async def test_compression_follows_settings(fake_salesforce, mock_salesforce_auth_instance, test_settings):
    config = test_settings.model_copy(update={"COMPRESSION_HEADERS": True})
    fake_salesforce.add("POST", "/jobs/query", httpx.Response(200, json={"id": "750Q"}))

    async with httpx.AsyncClient(transport=fake_salesforce.transport()) as http_client:
        client = SalesforceApiClient(mock_salesforce_auth_instance, config, http_client)
        await client.request_json("POST", "/jobs/query", body={"query": "SELECT Id FROM Account"})

    assert json.loads(gzip.decompress(fake_salesforce.requests[0].content)) == {"query": "SELECT Id FROM Account"}


async def test_non_success_status_raises_remote_error_with_stage(api_client, fake_salesforce):
    fake_salesforce.add("PATCH", "/jobs/ingest/750A", httpx.Response(400, text="InvalidJobState"))

    with pytest.raises(RemoteError) as exc_info:
        await api_client.request_json("PATCH", "/jobs/ingest/750A", body={"state": "UploadComplete"}, stage="close")

    assert exc_info.value.stage == "close"
    assert exc_info.value.status_code == 400
    assert exc_info.value.body == "InvalidJobState"


async def test_unauthorized_raises_authentication_error(api_client, fake_salesforce):
    fake_salesforce.add("GET", "/jobs/ingest/750A", httpx.Response(401, json=[{"errorCode": "INVALID_SESSION_ID"}]))

    with pytest.raises(AuthenticationError) as exc_info:
        await api_client.request_json("GET", "/jobs/ingest/750A", stage="poll")

    assert exc_info.value.status_code == 401
    assert exc_info.value.stage == "poll"


async def test_transport_failure_raises_remote_error(mock_salesforce_auth_instance, test_settings):
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(refuse)) as http_client:
        client = SalesforceApiClient(mock_salesforce_auth_instance, test_settings, http_client)
        with pytest.raises(RemoteError) as exc_info:
            await client.request("GET", "/jobs/ingest/750A", stage="poll")

    assert exc_info.value.stage == "poll"
    assert exc_info.value.status_code is None


async def test_invalid_json_response(api_client, fake_salesforce):
    fake_salesforce.add("GET", "/jobs/ingest/750A", httpx.Response(200, text="<html>"))

    with pytest.raises(RemoteError):
        await api_client.request_json("GET", "/jobs/ingest/750A")
