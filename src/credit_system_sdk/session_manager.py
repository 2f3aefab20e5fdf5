"""Authentication session manager.

Owns the token lifecycle for one SDK instance: picking the operating mode,
acquiring credentials, renewing them ahead of expiry, and tearing the session
down. Every outbound call reads its bearer token from here (through the
transport's auth header, which this class keeps in sync with the store).

State machine::

    UNINITIALIZED -> INITIALIZING -> AUTHENTICATED | UNAUTHENTICATED
    AUTHENTICATED <-> REFRESHING
    any state -> LOGGED_OUT (logout)

Refreshes are single-flight: a manual ``refresh()`` arriving while a scheduled
one is in flight awaits the same result. A refresh that completes after the
session was cleared or logged out is discarded.
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Mapping, Optional, Tuple, Union

from pydantic import ValidationError as PydanticValidationError

from .async_api_client import AsyncApiClient
from .config import AuthMode, CreditSystemConfiguration
from .credential_acquirer import CredentialAcquirer
from .exceptions import (
    AuthenticationFailedError,
    CreditSystemError,
    NetworkError,
    NotInitializedError,
    TokenExpiredError,
)
from .host_context import HostContext, TopLevelHostContext
from .models import (
    AuthCredentials,
    Credential,
    MessageType,
    OperatingMode,
    SessionState,
    TokenStatus,
    User,
)
from .scheduler import AsyncioRefreshScheduler, RefreshScheduler
from .token_store import TokenStore
from .utils import utc_now
from .validators import is_expired


class SessionManager:  # pylint: disable=too-many-instance-attributes
    """Authentication state machine for one SDK instance."""

    def __init__(
        self,
        config: CreditSystemConfiguration,
        api_client: AsyncApiClient,
        host_context: Optional[HostContext] = None,
        scheduler: Optional[RefreshScheduler] = None,
        acquirer: Optional[CredentialAcquirer] = None,
        clock: Callable[[], datetime] = utc_now,
        on_session_expired: Optional[Callable[[], None]] = None,
        on_token_refreshed: Optional[Callable[[Credential], None]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        """Initialize the session manager.

        The operating mode is resolved here, from the configured auth mode and
        whether the host context is nested.

        Args:
            config: SDK configuration
            api_client: Transport whose auth header tracks the current token
            host_context: Frame hierarchy and parent message channel
            scheduler: Renewal scheduler; defaults to the event loop scheduler
            acquirer: Credential acquirer; built from the other arguments by default
            clock: Returns the current aware UTC time
            on_session_expired: Called when a live session is torn down involuntarily
            on_token_refreshed: Called with each refreshed credential
            logger: Logger to use instead of the configured one
        """
        self._config = config
        self._api_client = api_client
        self._host = host_context or TopLevelHostContext()
        self._clock = clock
        self._logger = logger or config.logger

        self._scheduler = scheduler or AsyncioRefreshScheduler(clock=clock, logger=self._logger)
        self._store = TokenStore(
            self._scheduler,
            refresh_buffer=config.token_refresh_buffer,
            auto_refresh=config.auto_refresh_token,
            clock=clock,
            logger=self._logger,
        )
        self._store.on_due = self._on_refresh_due
        self._acquirer = acquirer or CredentialAcquirer(
            api_client, self._host, config, clock=clock, logger=self._logger
        )

        self.on_session_expired = on_session_expired
        self.on_token_refreshed = on_token_refreshed

        self._nested = self._host.is_nested()
        self._mode, self._strict_delegation = self._resolve_mode()
        self._state = SessionState.UNINITIALIZED
        self._initialize_started = False
        self._initialized = False
        # bumped whenever the session is cleared; stale refreshes compare against it
        self._epoch = 0
        self._refresh_task: Optional[asyncio.Task] = None

    def _resolve_mode(self) -> Tuple[OperatingMode, bool]:
        auth_mode = self._config.auth_mode
        if auth_mode == AuthMode.STANDALONE:
            return OperatingMode.PASSWORD_LOGIN, False
        if not self._nested:
            if auth_mode == AuthMode.JWT:
                self._logger.warning(
                    "JWT auth mode requested outside a nested frame; using password login"
                )
            return OperatingMode.PASSWORD_LOGIN, False
        return OperatingMode.PARENT_DELEGATED, auth_mode == AuthMode.JWT

    # queries

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def operating_mode(self) -> OperatingMode:
        return self._mode

    @property
    def token_status(self) -> TokenStatus:
        return self._store.status()

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def api_prefix(self) -> str:
        return self._config.api_prefix(self._mode)

    def is_authenticated(self) -> bool:
        return self._store.is_authenticated()

    def get_user(self) -> Optional[User]:
        return self._store.current()

    def get_token(self) -> Optional[str]:
        return self._store.token

    def get_credential(self) -> Optional[Credential]:
        return self._store.credential

    # lifecycle

    async def initialize(self) -> None:
        """Resolve the starting state; runs once, later calls are no-ops.

        In parent-delegated mode the parent frame is asked for a token. In
        ``auto`` or inferred mode a failure falls back to password login; with
        an explicit ``jwt`` mode the failure is raised once the session has
        settled as unauthenticated.
        """
        if self._initialize_started:
            self._logger.debug("Session already initialized")
            return
        self._initialize_started = True
        self._state = SessionState.INITIALIZING
        self._logger.info(
            "Initializing session (mode=%s, nested=%s)", self._mode.value, self._nested
        )

        if self._mode != OperatingMode.PARENT_DELEGATED:
            self._finish_initialize(SessionState.UNAUTHENTICATED)
            return

        epoch = self._epoch
        try:
            credential = await self._acquirer.by_delegation(
                self._config.delegation_timeout,
                self._config.parent_origin,
            )
            if self._config.validate_delegated_tokens:
                user = await self._acquirer.validate_remote(credential.token)
                credential = credential.model_copy(update={"user": user})
        except Exception as e:
            if epoch != self._epoch:
                self._initialized = True
                return
            self._finish_initialize(SessionState.UNAUTHENTICATED)
            error = e
            if not isinstance(e, CreditSystemError):
                error = AuthenticationFailedError(
                    f"Parent authentication failed: {e}", status_code=None, details=e
                )
            if self._strict_delegation:
                self._logger.error("Parent authentication failed: %s", error)
                if error is e:
                    raise
                raise error from e
            self._logger.warning(
                "Parent authentication failed, falling back to password login: %s", error
            )
            self._mode = OperatingMode.PASSWORD_LOGIN
            return

        if epoch != self._epoch:
            self._initialized = True
            return
        self._store_credential(credential)
        self._initialized = True

    def _finish_initialize(self, state: SessionState) -> None:
        self._state = state
        self._initialized = True

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise NotInitializedError()

    async def authenticate(
        self,
        credentials: Union[AuthCredentials, Mapping[str, str]],
    ) -> User:
        """Log in with an email and password.

        Raises:
            NotInitializedError: ``initialize()`` has not completed
            ValidationError: Malformed input; no request is made
            AuthenticationFailedError: The backend rejected the credentials
            NetworkError: Any other failure talking to the backend
        """
        self._ensure_initialized()
        if isinstance(credentials, AuthCredentials):
            email, password = credentials.email, credentials.password
        else:
            email, password = credentials.get("email"), credentials.get("password")

        credential = await self._acquirer.by_password(email, password)
        self._store_credential(credential)
        return credential.user

    async def authenticate_with_token(
        self,
        token: str,
        trust: bool = False,
        user: Optional[User] = None,
    ) -> User:
        """Log in with a pre-issued JWT; see ``CredentialAcquirer.by_token``."""
        self._ensure_initialized()
        credential = await self._acquirer.by_token(token, trust=trust, user=user)
        self._store_credential(credential)
        return credential.user

    async def refresh(self) -> Credential:
        """Exchange the current token for a fresh one.

        Raises:
            AuthenticationFailedError: There is no token to refresh
            TokenExpiredError: The token's mode has no refresh endpoint, or the
                backend rejected the token (the session is then cleared)
            NetworkError: The refresh call failed otherwise (the session is then cleared)
        """
        if self._refresh_task is not None and not self._refresh_task.done():
            return await asyncio.shield(self._refresh_task)

        credential = self._store.credential
        if credential is None:
            raise AuthenticationFailedError("No token to refresh")

        if credential.source not in self._config.refreshable_modes:
            self._logger.warning(
                "Token refresh not available for %s sessions. Please re-authenticate.",
                credential.source.value,
            )
            raise TokenExpiredError("Token has expired. Please re-authenticate.")

        self._state = SessionState.REFRESHING
        task = asyncio.ensure_future(self._refresh_remote(credential, self._epoch))
        task.add_done_callback(_retrieve_exception)
        self._refresh_task = task
        return await asyncio.shield(task)

    async def _refresh_remote(self, credential: Credential, epoch: int) -> Credential:
        endpoint = self.api_prefix + self._config.refresh_path
        try:
            response = await self._api_client.post(endpoint, token=credential.token)
            payload = response.get("data") if isinstance(response.get("data"), dict) else response
            if not response.get("success") or not payload.get("token"):
                raise AuthenticationFailedError(
                    "Token refresh failed", status_code=None, details=response
                )
            try:
                refreshed = Credential(
                    token=payload["token"],
                    expires_at=payload.get("expires_at") or payload.get("expiresAt"),
                    user=credential.user,
                    source=credential.source,
                )
            except PydanticValidationError as e:
                raise AuthenticationFailedError(
                    "Malformed refresh response", status_code=None, details=e
                ) from e
            if is_expired(refreshed.expires_at, self._clock()):
                raise TokenExpiredError()
        except CreditSystemError as e:
            error = self._classify_refresh_error(e)
            self._logger.error("Token refresh failed: %s", error)
            if epoch == self._epoch:
                self.expire()
            if error is e:
                raise
            raise error from e

        if epoch != self._epoch:
            self._logger.info("Session ended during refresh; discarding refreshed token")
            raise AuthenticationFailedError("Session ended while the token was being refreshed")

        self._store_credential(refreshed)
        self._logger.info("Token refreshed successfully")
        if self.on_token_refreshed is not None:
            self.on_token_refreshed(refreshed)
        return refreshed

    @staticmethod
    def _classify_refresh_error(error: CreditSystemError) -> CreditSystemError:
        if isinstance(error, AuthenticationFailedError) and error.status_code == 401:
            return TokenExpiredError(details=error)
        if isinstance(error, (AuthenticationFailedError, TokenExpiredError, NetworkError)):
            return error
        return NetworkError(details=error)

    async def _on_refresh_due(self) -> None:
        self._logger.info("Attempting scheduled token refresh")
        try:
            await self.refresh()
        except CreditSystemError as e:
            self._logger.error("Scheduled token refresh failed: %s", e)
            if self._store.credential is not None:
                self.expire()

    def ensure_authenticated(self) -> None:
        """Check the session before a ledger call, clearing an expired credential.

        Raises:
            NotInitializedError: ``initialize()`` has not completed
            TokenExpiredError: The credential expired; the session is now cleared
            AuthenticationFailedError: There is no credential
        """
        self._ensure_initialized()
        status = self._store.status()
        if status == TokenStatus.EXPIRED:
            self.expire()
            raise TokenExpiredError()
        if status == TokenStatus.UNAUTHENTICATED:
            raise AuthenticationFailedError("User is not authenticated")

    def expire(self) -> None:
        """Tear down a session whose credential is no longer usable."""
        had_credential = self._store.credential is not None
        self._clear()
        if self._initialized:
            self._state = SessionState.UNAUTHENTICATED
        if had_credential:
            self._logger.warning("Session expired")
            if self.on_session_expired is not None:
                self.on_session_expired()

    def logout(self) -> None:
        """End the session from any state; safe to call repeatedly."""
        self._acquirer.cancel_delegation()
        self._clear()
        self._state = SessionState.LOGGED_OUT
        self._logger.info("User logged out")

    def _clear(self) -> None:
        self._epoch += 1
        self._store.clear()
        self._api_client.remove_auth_header()

    def _store_credential(self, credential: Credential) -> None:
        self._store.set(credential)
        self._api_client.set_auth_header(credential.token)
        self._state = SessionState.AUTHENTICATED

        if self._nested and self._config.parent_origin:
            self._host.send_to_parent(
                {
                    "type": MessageType.USER_CREDENTIALS.value,
                    "user": credential.user.model_dump() if credential.user else None,
                },
                self._config.parent_origin,
            )


def _retrieve_exception(task: asyncio.Task) -> None:
    # marks the exception as retrieved when every awaiting caller was cancelled
    if not task.cancelled():
        task.exception()
