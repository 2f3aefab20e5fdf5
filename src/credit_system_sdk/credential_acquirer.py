"""Obtains credentials by password, by pre-issued token, or from the parent frame."""

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from pydantic import ValidationError as PydanticValidationError

from .async_api_client import AsyncApiClient
from .config import CreditSystemConfiguration
from .exceptions import (
    AuthenticationFailedError,
    CreditSystemError,
    NetworkError,
    TokenExpiredError,
    extract_error_message,
)
from .host_context import HostContext, HostMessage
from .models import Credential, MessageType, OperatingMode, ParentMessage, User
from .utils import decode_token_claims, expiry_from_claims, utc_now
from .validators import is_expired, validate_login

REQUEST_SOURCE = "credit-system-sdk"


class CredentialAcquirer:
    """Runs the three acquisition paths and returns validated credentials.

    Nothing here stores state about the session; the session manager decides
    what to do with the returned ``Credential``.
    """

    def __init__(
        self,
        api_client: AsyncApiClient,
        host_context: HostContext,
        config: CreditSystemConfiguration,
        clock: Callable[[], datetime] = utc_now,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        """Initialize the acquirer.

        Args:
            api_client: Transport for the auth endpoints
            host_context: Channel to the parent frame
            config: SDK configuration (endpoint paths, parent origin)
            clock: Returns the current aware UTC time
            logger: Logger to use instead of the module logger
        """
        self._api_client = api_client
        self._host = host_context
        self._config = config
        self._clock = clock
        self._logger = logger or logging.getLogger(__name__)
        self._pending_delegation: Optional[asyncio.Future] = None

    @property
    def delegation_pending(self) -> bool:
        return self._pending_delegation is not None

    def _endpoint(self, path: str) -> str:
        return self._config.api_prefix(OperatingMode.PASSWORD_LOGIN) + path

    def _accept(self, credential: Credential) -> Credential:
        """Reject credentials whose expiry is not strictly in the future."""
        if is_expired(credential.expires_at, self._clock()):
            raise TokenExpiredError()
        return credential

    async def by_password(self, email: str, password: str) -> Credential:
        """Exchange an email and password for a credential.

        Raises:
            ValidationError: Malformed email or empty password; no request is made
            AuthenticationFailedError: The backend rejected the credentials
            NetworkError: Any other failure talking to the backend
        """
        validate_login(email, password)

        try:
            response = await self._api_client.post(
                self._endpoint(self._config.auth_path),
                json_data={"email": email, "password": password},
            )
        except AuthenticationFailedError as e:
            raise AuthenticationFailedError(
                "Invalid email or password", details=e.details
            ) from e
        except NetworkError:
            raise
        except CreditSystemError as e:
            raise NetworkError(details=e) from e

        if not response.get("success"):
            raise AuthenticationFailedError(
                extract_error_message(response, "Authentication failed"),
                details=response,
            )

        payload = response.get("data") if isinstance(response.get("data"), dict) else response
        credential = self._build_credential(
            payload,
            OperatingMode.PASSWORD_LOGIN,
        )
        self._logger.info(
            "Authentication successful (user_id=%s)",
            credential.user.id if credential.user else None,
        )
        return self._accept(credential)

    async def by_token(
        self,
        token: str,
        trust: bool = False,
        user: Optional[User] = None,
    ) -> Credential:
        """Accept a pre-issued JWT.

        The embedded expiry is checked locally first. With ``trust`` the
        principal comes from ``user`` when given, else from the token claims;
        otherwise the backend validates the token and supplies the principal.
        A trusted token with a caller-supplied ``user`` is one the parent frame
        handed over, so the credential is recorded as parent-delegated.

        Raises:
            TokenExpiredError: The token's ``exp`` is in the past; no request is made
            AuthenticationFailedError: The token is malformed or rejected
            NetworkError: Any other failure talking to the backend
        """
        claims = decode_token_claims(token)
        expires_at = expiry_from_claims(claims)
        if is_expired(expires_at, self._clock()):
            raise TokenExpiredError()

        source = OperatingMode.PRE_ISSUED_TOKEN
        if trust and user is not None:
            source = OperatingMode.PARENT_DELEGATED
        elif trust:
            user = self._user_from_claims(claims)
        else:
            user = await self.validate_remote(token)

        credential = Credential(
            token=token,
            expires_at=expires_at,
            user=user,
            source=source,
        )
        self._logger.info(
            "Token authentication successful (user_id=%s, trusted=%s)", user.id, trust
        )
        return self._accept(credential)

    async def validate_remote(self, token: str) -> User:
        """Ask the backend whether ``token`` is valid and who it belongs to."""
        try:
            response = await self._api_client.get(
                self._endpoint(self._config.validate_path),
                token=token,
            )
        except AuthenticationFailedError as e:
            raise AuthenticationFailedError("Invalid token", details=e.details) from e
        except NetworkError:
            raise
        except CreditSystemError as e:
            raise NetworkError(details=e) from e

        data = response.get("data") if isinstance(response.get("data"), dict) else {}
        user_data = response.get("user") or data.get("user")
        if not response.get("success") or not user_data:
            raise AuthenticationFailedError("Invalid token", details=response)
        try:
            return User.model_validate(user_data)
        except PydanticValidationError as e:
            raise AuthenticationFailedError("Invalid user data from backend", details=e) from e

    async def by_delegation(
        self,
        timeout: float,
        expected_origin: Optional[str] = None,
    ) -> Credential:
        """Request a credential from the parent frame and wait for the answer.

        Exactly one listener is registered and it is removed on every exit
        path. Messages from any origin other than ``expected_origin`` (when
        set) are ignored.

        Args:
            timeout: Seconds to wait for a matching response
            expected_origin: Origin the parent must send from; None accepts any

        Raises:
            AuthenticationFailedError: Timeout, explicit parent error, bad token
                data, or another delegation wait already in progress
            TokenExpiredError: The parent sent an already expired token
        """
        if self._pending_delegation is not None:
            raise AuthenticationFailedError(
                "A credential request to the parent is already in progress"
            )

        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        self._pending_delegation = future

        def handle_message(event: HostMessage) -> None:
            if future.done():
                return
            if expected_origin and event.origin != expected_origin:
                self._logger.warning("Ignored message from unauthorized origin: %s", event.origin)
                return
            if not isinstance(event.data, dict):
                return

            message_type = event.data.get("type")
            try:
                message = ParentMessage.model_validate(event.data)
            except PydanticValidationError:
                if message_type == MessageType.JWT_TOKEN:
                    future.set_exception(
                        AuthenticationFailedError("Invalid token data from parent")
                    )
                return

            if message.message_type == MessageType.JWT_TOKEN:
                if message.token and message.user:
                    future.set_result(message)
                else:
                    self._logger.error("Invalid token data from parent")
                    future.set_exception(
                        AuthenticationFailedError("Invalid token data from parent")
                    )
            elif message.message_type == MessageType.AUTHENTICATION_ERROR:
                self._logger.error("Authentication error from parent: %s", message.error)
                future.set_exception(
                    AuthenticationFailedError(message.error or "Authentication failed")
                )

        unsubscribe = self._host.on_message(handle_message)
        try:
            target_origin = expected_origin or "*"
            self._logger.info("Requesting credentials from parent (target_origin=%s)", target_origin)
            self._host.send_to_parent(
                {"type": MessageType.REQUEST_CREDENTIALS.value, "source": REQUEST_SOURCE},
                target_origin,
            )
            try:
                message: ParentMessage = await asyncio.wait_for(future, timeout)
            except asyncio.TimeoutError as e:
                self._logger.error("No response from parent after %.1fs", timeout)
                raise AuthenticationFailedError(
                    "Timeout waiting for parent authentication"
                ) from e
        finally:
            unsubscribe()
            self._pending_delegation = None

        credential = Credential(
            token=message.token,
            expires_at=message.expires_at,
            user=message.user,
            source=OperatingMode.PARENT_DELEGATED,
        )
        self._logger.info(
            "Parent authentication successful (user_id=%s)",
            credential.user.id if credential.user else None,
        )
        return self._accept(credential)

    def cancel_delegation(self) -> None:
        """Abort an outstanding parent wait; its caller sees an authentication failure."""
        future = self._pending_delegation
        if future is not None and not future.done():
            future.set_exception(AuthenticationFailedError("Credential request cancelled"))

    def _build_credential(self, payload: Dict[str, Any], source: OperatingMode) -> Credential:
        if not payload.get("token"):
            raise AuthenticationFailedError(
                "Authentication response did not include a token", details=payload
            )
        try:
            return Credential(
                token=payload["token"],
                expires_at=payload.get("expires_at") or payload.get("expiresAt"),
                user=payload.get("user"),
                source=source,
            )
        except PydanticValidationError as e:
            raise AuthenticationFailedError(
                "Malformed authentication response", details=e
            ) from e

    @staticmethod
    def _user_from_claims(claims: Dict[str, Any]) -> User:
        try:
            if isinstance(claims.get("user"), dict):
                return User.model_validate(claims["user"])
            if claims.get("sub") is not None:
                return User(id=claims["sub"], name=claims.get("name"), email=claims.get("email"))
        except PydanticValidationError as e:
            raise AuthenticationFailedError("Invalid user claims in token", details=e) from e
        raise AuthenticationFailedError("Token does not identify a user")
