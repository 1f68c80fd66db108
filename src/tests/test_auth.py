# src/tests/test_auth.py
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from sfdc_bulk.core.config import Settings
from sfdc_bulk.core.exceptions import AuthenticationError
from sfdc_bulk.salesforce.auth import AccessTokenAuth, SalesforceAuth, get_salesforce_auth_instance


@pytest.fixture
def password_settings() -> Settings:
    return Settings(
        _env_file=None,
        SALESFORCE_CLIENT_ID="test_client_id",
        SALESFORCE_CLIENT_SECRET="test_client_secret",
        SALESFORCE_USERNAME="test_username",
        SALESFORCE_PASSWORD="test_password",
        SALESFORCE_ACCESS_TOKEN=None,
        SALESFORCE_INSTANCE_URL=None,
    )


def _mock_async_client(response=None, side_effect=None):
    mock_client = MagicMock()
    mock_client.post = AsyncMock(return_value=response, side_effect=side_effect)
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=False)
    return mock_client


async def test_access_token_auth_returns_details():
    auth = AccessTokenAuth("token", "https://test.my.salesforce.com")
    assert await auth.get_auth_details() == ("token", "https://test.my.salesforce.com")


def test_access_token_auth_requires_both_values():
    with pytest.raises(AuthenticationError):
        AccessTokenAuth("", "https://test.my.salesforce.com")


async def test_password_flow_authenticates_once(password_settings):
    request = httpx.Request("POST", password_settings.SALESFORCE_TOKEN_URL)
    response = httpx.Response(
        200, json={"access_token": "new_token", "instance_url": "https://test.my.salesforce.com"}, request=request
    )
    mock_client = _mock_async_client(response=response)

    with patch("sfdc_bulk.salesforce.auth.httpx.AsyncClient", return_value=mock_client):
        auth = SalesforceAuth(password_settings)
        assert await auth.get_auth_details() == ("new_token", "https://test.my.salesforce.com")
        assert await auth.get_auth_details() == ("new_token", "https://test.my.salesforce.com")

    mock_client.post.assert_awaited_once()
    assert mock_client.post.call_args.kwargs["data"]["grant_type"] == "password"


async def test_password_flow_http_error(password_settings):
    request = httpx.Request("POST", password_settings.SALESFORCE_TOKEN_URL)
    response = httpx.Response(400, json={"error": "invalid_grant", "error_description": "authentication failure"}, request=request)
    mock_client = _mock_async_client(response=response)

    with patch("sfdc_bulk.salesforce.auth.httpx.AsyncClient", return_value=mock_client):
        with pytest.raises(AuthenticationError) as exc_info:
            await SalesforceAuth(password_settings).get_auth_details()

    assert exc_info.value.status_code == 400
    assert "authentication failure" in str(exc_info.value)
    assert exc_info.value.stage == "auth"


async def test_password_flow_network_error(password_settings):
    mock_client = _mock_async_client(side_effect=httpx.ConnectError("connection refused"))

    with patch("sfdc_bulk.salesforce.auth.httpx.AsyncClient", return_value=mock_client):
        with pytest.raises(AuthenticationError) as exc_info:
            await SalesforceAuth(password_settings).authenticate()

    assert "network issue" in str(exc_info.value)


async def test_password_flow_missing_credentials():
    config = Settings(_env_file=None, SALESFORCE_USERNAME="user", SALESFORCE_PASSWORD="pw",
                      SALESFORCE_CLIENT_ID=None, SALESFORCE_CLIENT_SECRET=None)
    with pytest.raises(AuthenticationError) as exc_info:
        await SalesforceAuth(config).authenticate()
    assert "client_id" in str(exc_info.value)


def test_auth_factory_prefers_access_token(test_settings, password_settings):
    assert isinstance(get_salesforce_auth_instance(test_settings), AccessTokenAuth)
    assert isinstance(get_salesforce_auth_instance(password_settings), SalesforceAuth)


def test_auth_factory_without_credentials():
    config = Settings(_env_file=None, SALESFORCE_ACCESS_TOKEN=None, SALESFORCE_INSTANCE_URL=None,
                      SALESFORCE_USERNAME=None, SALESFORCE_PASSWORD=None)
    with pytest.raises(AuthenticationError):
        get_salesforce_auth_instance(config)
