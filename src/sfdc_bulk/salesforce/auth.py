# src/sfdc_bulk/salesforce/auth.py
import asyncio
import logging
from typing import Optional, Tuple

import httpx

from sfdc_bulk.core.config import Settings, settings
from sfdc_bulk.core.exceptions import AuthenticationError

logger = logging.getLogger(settings.APP_NAME)


class AccessTokenAuth:
    """Uses a token and instance URL issued elsewhere. Nothing is refreshed."""

    def __init__(self, access_token: str, instance_url: str):
        if not access_token or not instance_url:
            raise AuthenticationError("An access token and an instance URL are both required.")
        self._access_token = access_token
        self._instance_url = instance_url

    async def get_auth_details(self) -> Tuple[str, str]:
        return self._access_token, self._instance_url


class SalesforceAuth:
    """
    Obtains an access token with the OAuth 2.0 username-password flow.
    Authenticates once, lazily, on first use; the token is assumed valid for the
    lifetime of the pipelines that use it.
    """

    def __init__(self, config: Optional[Settings] = None):
        self.config = config or settings
        self._access_token: Optional[str] = None
        self._instance_url: Optional[str] = None
        self._lock = asyncio.Lock()

    async def authenticate(self) -> None:
        """
        Performs an authentication request against Salesforce using the password flow.
        On success, caches the access token and instance URL.
        Raises AuthenticationError if authentication fails.
        """
        payload = {
            'grant_type': 'password',
            'client_id': self.config.SALESFORCE_CLIENT_ID,
            'client_secret': self.config.SALESFORCE_CLIENT_SECRET,
            'username': self.config.SALESFORCE_USERNAME,
            'password': self.config.SALESFORCE_PASSWORD
        }
        missing = [key for key, value in payload.items() if not value]
        if missing:
            raise AuthenticationError(f"Missing credentials for password flow: {', '.join(missing)}")

        logger.info("Attempting to authenticate with Salesforce...")
        async with httpx.AsyncClient(timeout=30.0) as client:
            try:
                response = await client.post(self.config.SALESFORCE_TOKEN_URL, data=payload)
                response.raise_for_status()
            except httpx.RequestError as e:
                logger.error(f"Salesforce authentication request failed (network issue): {str(e)}")
                raise AuthenticationError(
                    f"Failed to authenticate with Salesforce (network issue): {e.__class__.__name__}"
                ) from e
            except httpx.HTTPStatusError as e:
                logger.error(
                    f"Salesforce authentication failed with status {e.response.status_code}: {e.response.text}"
                )
                detail_msg = f"Failed to authenticate with Salesforce (HTTP error {e.response.status_code})"
                try:
                    err_json = e.response.json()
                    if 'error_description' in err_json:
                        detail_msg += f": {err_json['error_description']}"
                    elif 'error' in err_json:
                        detail_msg += f": {err_json['error']}"
                except ValueError:  # Not JSON
                    pass
                raise AuthenticationError(detail_msg, e.response.status_code, e.response.text) from e

        auth_response = response.json()
        access_token = auth_response.get('access_token')
        instance_url = auth_response.get('instance_url')
        if not access_token or not instance_url:
            logger.error("Authentication response missing access_token or instance_url.")
            raise AuthenticationError("Salesforce authentication response missing critical data.")

        self._access_token = access_token
        self._instance_url = instance_url
        logger.info(f"Authentication successful. Instance URL: {instance_url}")

    async def get_auth_details(self) -> Tuple[str, str]:
        """
        Returns (access_token, instance_url), authenticating first if needed.
        """
        async with self._lock:  # Only one coroutine authenticates
            if not self._access_token or not self._instance_url:
                await self.authenticate()
        return self._access_token, self._instance_url


def get_salesforce_auth_instance(config: Optional[Settings] = None):
    """
    Builds an auth provider from configuration: a pre-issued token when one is configured,
    the password flow otherwise.
    """
    config = config or settings
    if config.SALESFORCE_ACCESS_TOKEN and config.SALESFORCE_INSTANCE_URL:
        return AccessTokenAuth(config.SALESFORCE_ACCESS_TOKEN, config.SALESFORCE_INSTANCE_URL)
    if config.SALESFORCE_USERNAME and config.SALESFORCE_PASSWORD:
        return SalesforceAuth(config)
    raise AuthenticationError(
        "No Salesforce credentials configured: set SALESFORCE_ACCESS_TOKEN and SALESFORCE_INSTANCE_URL, "
        "or the username-password flow settings."
    )
