import logging
from enum import Enum
from typing import Callable, FrozenSet, Iterable, Optional, Union
from urllib.parse import urlparse

from .exceptions import CreditSystemError, InvalidConfigurationError
from .models import OperatingMode

SECURE_CREDITS_PATH = "/secure-credits"

DEFAULT_REFRESHABLE_MODES = frozenset(
    {OperatingMode.PARENT_DELEGATED, OperatingMode.PRE_ISSUED_TOKEN}
)


class AuthMode(str, Enum):
    JWT = "jwt"
    STANDALONE = "standalone"
    AUTO = "auto"


class CreditSystemConfiguration:  # pylint: disable=too-many-instance-attributes
    """Configuration for CreditSystem and its session manager."""

    def __init__(
        self,
        api_url: str,
        auth_mode: Optional[Union[AuthMode, str]] = None,
        parent_origin: Optional[str] = None,
        auto_refresh_token: bool = True,
        token_refresh_buffer: float = 60.0,
        delegation_timeout: float = 10.0,
        validate_delegated_tokens: bool = False,
        refreshable_modes: Optional[Iterable[OperatingMode]] = None,
        request_timeout: int = 30,
        balance_cache_ttl: float = 30.0,
        balance_retry_attempts: int = 3,
        balance_retry_delay: float = 1.0,
        auth_path: str = "/auth",
        validate_path: str = "/validate",
        refresh_path: str = "/refresh-token",
        on_token_expired: Optional[Callable[[], None]] = None,
        on_balance_update: Optional[Callable[[float], None]] = None,
        on_error: Optional[Callable[[CreditSystemError], None]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        """Initialize and validate the configuration.

        Args:
            api_url: Base URL of the credit backend (http or https)
            auth_mode: "jwt", "standalone", "auto", or None to infer from the host context
            parent_origin: Origin the parent frame must send messages from
            auto_refresh_token: Schedule renewal before expiry and refresh on 401
            token_refresh_buffer: Seconds before expiry at which renewal fires
            delegation_timeout: Seconds to wait for the parent to send a token
            validate_delegated_tokens: Re-check parent supplied tokens with the backend
            refreshable_modes: Operating modes whose tokens have a refresh endpoint
            request_timeout: Transport timeout in seconds
            balance_cache_ttl: Seconds a fetched balance stays fresh
            balance_retry_attempts: Attempts for the balance read
            balance_retry_delay: Base delay between balance attempts, grows per attempt
            auth_path: Password login path under the mode prefix
            validate_path: Token validation path under the mode prefix
            refresh_path: Token refresh path under the mode prefix
            on_token_expired: Called when the session expires
            on_balance_update: Called with every new balance
            on_error: Called with every error surfaced by the SDK
            logger: Logger for this instance

        Raises:
            InvalidConfigurationError: If a value is missing or out of range
        """
        if not api_url:
            raise InvalidConfigurationError("API URL is required")
        parsed = urlparse(api_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise InvalidConfigurationError("Invalid API URL format")

        if auth_mode is not None:
            try:
                auth_mode = AuthMode(auth_mode)
            except ValueError as e:
                raise InvalidConfigurationError(
                    'Auth mode must be one of "jwt", "standalone" or "auto"'
                ) from e

        if token_refresh_buffer < 0:
            raise InvalidConfigurationError("Token refresh buffer must be a positive number")
        if delegation_timeout <= 0:
            raise InvalidConfigurationError("Delegation timeout must be greater than zero")
        if balance_retry_attempts < 1:
            raise InvalidConfigurationError("Balance retry attempts must be at least 1")

        self.api_url = api_url.rstrip("/")
        self.auth_mode: Optional[AuthMode] = auth_mode
        self.parent_origin = parent_origin
        self.auto_refresh_token = auto_refresh_token
        self.token_refresh_buffer = token_refresh_buffer
        self.delegation_timeout = delegation_timeout
        self.validate_delegated_tokens = validate_delegated_tokens
        self.refreshable_modes: FrozenSet[OperatingMode] = (
            frozenset(refreshable_modes)
            if refreshable_modes is not None
            else DEFAULT_REFRESHABLE_MODES
        )
        self.request_timeout = request_timeout
        self.balance_cache_ttl = balance_cache_ttl
        self.balance_retry_attempts = balance_retry_attempts
        self.balance_retry_delay = balance_retry_delay
        self.auth_path = auth_path
        self.validate_path = validate_path
        self.refresh_path = refresh_path
        self.on_token_expired = on_token_expired
        self.on_balance_update = on_balance_update
        self.on_error = on_error
        self.logger = logger or logging.getLogger("credit_system_sdk")

    def api_prefix(self, mode: OperatingMode) -> str:
        """Path prefix for ledger endpoints in the given operating mode."""
        segment = "/iframe" if mode == OperatingMode.PARENT_DELEGATED else "/standalone"
        if SECURE_CREDITS_PATH in urlparse(self.api_url).path:
            return segment
        return f"{SECURE_CREDITS_PATH}{segment}"
