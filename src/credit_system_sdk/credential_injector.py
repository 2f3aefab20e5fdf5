"""Outbound call wrapper: bearer token on every call, one refresh-and-retry on 401."""

import logging
from typing import Any, Dict, Optional

from .async_api_client import AsyncApiClient
from .exceptions import AuthenticationFailedError, CreditSystemError
from .session_manager import SessionManager


class CredentialInjector:
    """Sends ledger requests with the session's credential.

    The transport's auth header always carries the session's current token.
    When the backend rejects it with a 401 the session is refreshed once and
    the call is retried once; a second 401 goes back to the caller.
    """

    def __init__(
        self,
        session: SessionManager,
        api_client: AsyncApiClient,
        auto_refresh: bool = True,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._session = session
        self._api_client = api_client
        self._auto_refresh = auto_refresh
        self._logger = logger or logging.getLogger(__name__)

    async def request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        json_data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        try:
            return await self._api_client.request(
                method, endpoint, params=params, json_data=json_data
            )
        except AuthenticationFailedError as e:
            if not self._auto_refresh or e.status_code != 401:
                raise
            self._logger.info("Token rejected, attempting refresh...")

        try:
            await self._session.refresh()
        except CreditSystemError:
            self._session.expire()
            raise

        return await self._api_client.request(
            method, endpoint, params=params, json_data=json_data
        )

    async def get(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return await self.request("GET", endpoint, params=params)

    async def post(
        self, endpoint: str, json_data: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        return await self.request("POST", endpoint, json_data=json_data)
