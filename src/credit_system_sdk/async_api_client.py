"""Async HTTP transport for the credit backend."""

import asyncio
import json
import logging
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urljoin

import aiohttp
from aiohttp import ClientSession

from .exceptions import (
    AuthenticationFailedError,
    InsufficientCreditsError,
    NetworkError,
    NotFoundError,
    RateLimitError,
    ServerError,
    ValidationError,
    error_from_response,
    extract_error_message,
    parse_available_credits,
)


class AsyncApiClient:
    """Async HTTP client that maps failed responses onto the SDK error taxonomy."""

    def __init__(
        self,
        base_url: str,
        timeout: int = 30,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        """Initialize the async transport.

        Args:
            base_url: Base URL for the API
            timeout: Request timeout in seconds
            logger: Logger to use instead of the module logger
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._logger = logger or logging.getLogger(__name__)

        self._session: Optional[ClientSession] = None
        self._auth_token: Optional[str] = None

    async def _get_session(self) -> ClientSession:
        """Get or create the aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = ClientSession(timeout=self.timeout)
        return self._session

    def _get_version(self) -> str:
        """Get the package version."""
        try:
            from . import __version__
            return __version__
        except (ImportError, AttributeError):
            return "0.1.0"

    def _get_headers(self) -> Dict[str, str]:
        """Get default headers."""
        version = self._get_version()
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": f"credit-system-python-sdk-{version}",
        }

    def set_auth_header(self, token: str) -> None:
        """Set the bearer token sent with every request."""
        self._auth_token = token

    def remove_auth_header(self) -> None:
        """Stop sending a bearer token."""
        self._auth_token = None

    @property
    def has_auth_header(self) -> bool:
        return self._auth_token is not None

    def _get_auth_headers(self, token: Optional[str] = None) -> Dict[str, str]:
        """Get headers including auth; an explicit token overrides the stored one."""
        headers = self._get_headers()
        bearer = token or self._auth_token
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"
        return headers

    def _build_url(self, endpoint: str) -> str:
        """Build full URL from endpoint."""
        return urljoin(self.base_url + "/", endpoint.lstrip("/"))

    @staticmethod
    def _parse_body(text: str) -> Dict[str, Any]:
        if not text:
            return {}
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            return {"raw_content": text}
        if not isinstance(data, dict):
            return {"data": data}
        return data

    def _handle_response(
        self,
        response_data: Dict[str, Any],
        status_code: int,
        headers: Optional[Mapping[str, str]] = None,
    ) -> Dict[str, Any]:
        """Return the body of a 2xx response, raise the matching error otherwise."""
        if 200 <= status_code < 300:
            return response_data

        error_message = extract_error_message(response_data, "Unknown error")

        if status_code == 401:
            raise AuthenticationFailedError(error_message, status_code, response_data)
        elif status_code in (400, 402):
            if "insufficient" in error_message.lower():
                raise InsufficientCreditsError(
                    error_message,
                    status_code,
                    response_data,
                    available=parse_available_credits(error_message),
                )
            raise ValidationError(error_message, status_code, response_data)
        elif status_code == 404:
            raise NotFoundError(error_message, status_code, response_data)
        elif status_code == 429:
            retry_after = None
            if headers and headers.get("Retry-After"):
                try:
                    retry_after = int(headers["Retry-After"])
                except ValueError:
                    retry_after = None
            raise RateLimitError(error_message, status_code, retry_after, response_data)
        elif 500 <= status_code < 600:
            raise ServerError(error_message, status_code, response_data)
        else:
            raise error_from_response(response_data, status_code)

    async def request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        json_data: Optional[Dict[str, Any]] = None,
        token: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Make an async request and return the decoded JSON body.

        Raises:
            NetworkError: If no response could be obtained
            CreditSystemError: The mapped error for a non-2xx response
        """
        session = await self._get_session()
        url = self._build_url(endpoint)
        headers = self._get_auth_headers(token)

        self._logger.debug("%s %s", method, url)
        try:
            async with session.request(
                method,
                url,
                params=params,
                json=json_data,
                headers=headers,
            ) as response:
                text = await response.text()
                response_data = self._parse_body(text)
                return self._handle_response(response_data, response.status, response.headers)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self._logger.warning("%s %s failed: %s", method, url, e)
            raise NetworkError(details=e) from e

    async def get(
        self,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        token: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Make async GET request."""
        return await self.request("GET", endpoint, params=params, token=token)

    async def post(
        self,
        endpoint: str,
        json_data: Optional[Dict[str, Any]] = None,
        token: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Make async POST request."""
        return await self.request("POST", endpoint, json_data=json_data, token=token)

    async def close(self) -> None:
        """Close the aiohttp session."""
        if self._session and not self._session.closed:
            await self._session.close()

    async def __aenter__(self) -> "AsyncApiClient":
        """Async context manager entry."""
        await self._get_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.close()
