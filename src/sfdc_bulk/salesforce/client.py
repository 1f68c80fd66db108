# src/sfdc_bulk/salesforce/client.py
import gzip
import json
import logging
from typing import Any, Dict, Optional, Protocol, Tuple, Union

import httpx
from pydantic_core import to_jsonable_python

from sfdc_bulk.core.config import Settings, settings
from sfdc_bulk.core.exceptions import AuthenticationError, RemoteError

logger = logging.getLogger(settings.APP_NAME)

JSON_TYPE = "application/json"
CSV_TYPE = "text/csv"


class AuthProvider(Protocol):
    async def get_auth_details(self) -> Tuple[str, str]:
        ...


class SalesforceApiClient:
    """
    An asynchronous client for the Salesforce REST and Bulk API 2.0 endpoints.
    Adds authentication and compression headers and turns non-2xx answers into RemoteError.
    Requests are never retried here; retry policy belongs to the caller.
    """

    def __init__(
        self,
        auth_instance: AuthProvider,
        config: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.auth = auth_instance
        self.config = config or settings
        self.http_client = http_client
        self.base_url_template = "{instance_url}/services/data/{api_version}"

    async def _get_base_url(self) -> str:
        _, instance_url = await self.auth.get_auth_details()
        return self.base_url_template.format(
            instance_url=instance_url.rstrip('/'),
            api_version=self.config.SALESFORCE_API_VERSION
        )

    async def _get_headers(self, content_type: str, accept: str, compress: bool) -> Dict[str, str]:
        access_token, _ = await self.auth.get_auth_details()
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": content_type,
            "Accept": accept,
            "Sforce-Call-Options": f"client={self.config.APP_NAME}/{self.config.APP_VERSION}"
        }
        if compress:
            headers["Content-Encoding"] = "gzip"
            headers["Accept-Encoding"] = "gzip"
        return headers

    def _encode_body(self, body: Any, content_type: str, compress: bool) -> Optional[bytes]:
        if body is None:
            return None
        if isinstance(body, bytes):
            content = body
        elif isinstance(body, str):
            content = body.encode('utf-8')
        elif content_type == JSON_TYPE:
            content = json.dumps(body, default=to_jsonable_python).encode('utf-8')
        else:
            raise TypeError(f"Cannot send a {type(body).__name__} body as {content_type}")
        return gzip.compress(content) if compress else content

    async def request(
        self,
        method: str,
        uri: str,
        content_type: str = JSON_TYPE,
        body: Any = None,
        params: Optional[Dict[str, Any]] = None,
        compress: Optional[bool] = None,
        accept: Optional[str] = None,
        stage: str = "request",
    ) -> httpx.Response:
        """
        Makes one HTTP request. `uri` is relative to /services/data/{version} unless absolute.
        Raises RemoteError naming `stage` on any non-2xx status or transport failure.
        """
        compress = self.config.COMPRESSION_HEADERS if compress is None else compress
        url = uri if uri.startswith(("http://", "https://")) else f"{await self._get_base_url()}{uri}"
        headers = await self._get_headers(content_type, accept or JSON_TYPE, compress)
        content = self._encode_body(body, content_type, compress)

        logger.debug(f"Salesforce API Request [{stage}]: {method} {url} | Params: {params}")
        try:
            if self.http_client is not None:
                response = await self.http_client.request(method, url, headers=headers, params=params, content=content)
            else:
                async with httpx.AsyncClient(timeout=self.config.HTTP_TIMEOUT) as client:
                    response = await client.request(method, url, headers=headers, params=params, content=content)
        except httpx.RequestError as e:
            logger.error(f"Salesforce API RequestError [{stage}]: {e.__class__.__name__} on {method} {url}. Detail: {str(e)}")
            raise RemoteError(
                stage, None, str(e),
                message=f"Salesforce {stage} request could not be completed: {e.__class__.__name__}"
            ) from e

        logger.debug(f"Salesforce API Response [{stage}]: {response.status_code} {response.text[:500]}")

        if response.status_code == 401:
            logger.error(f"401 Unauthorized from Salesforce on {method} {url}: {response.text}")
            raise AuthenticationError(
                f"Salesforce rejected the access token during {stage}: {response.text}", 401, response.text, stage=stage
            )
        if not response.is_success:
            logger.error(f"Salesforce API error [{stage}]: {response.status_code} on {method} {url}. Detail: {response.text}")
            raise RemoteError(stage, response.status_code, response.text)
        return response

    async def request_json(self, method: str, uri: str, body: Any = None, stage: str = "request", **kwargs) -> Union[Dict[str, Any], list, None]:
        """Sends a JSON request and returns the decoded JSON body (None for empty bodies)."""
        response = await self.request(method, uri, content_type=JSON_TYPE, body=body, stage=stage, **kwargs)
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise RemoteError(stage, response.status_code, response.text, message=f"Salesforce {stage} response is not valid JSON") from e

    async def aclose(self) -> None:
        if self.http_client is not None:
            await self.http_client.aclose()
