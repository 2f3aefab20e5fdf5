"""Credit system facade: session, ledger calls, balance cache and events."""

from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from .async_api_client import AsyncApiClient
from .config import CreditSystemConfiguration
from .credential_injector import CredentialInjector
from .exceptions import CreditSystemError, error_from_response
from .host_context import HostContext, HostMessage, TopLevelHostContext, Unsubscribe
from .ledger_client import AsyncLedgerApiClient
from .models import (
    AddCreditsRequest,
    Balance,
    Credential,
    MessageType,
    OperatingMode,
    ParentMessage,
    SpendRequest,
    Transaction,
    TransactionHistoryParams,
    User,
)
from .scheduler import RefreshScheduler
from .session_manager import SessionManager
from .utils import AsyncDebouncer, utc_now
from .validators import validate_amount

BALANCE_REFRESH_DELAY = 1.0


class CreditSystemEvent(str, Enum):
    AUTHENTICATED = "authenticated"
    BALANCE_CHANGED = "balance_changed"
    TRANSACTION_COMPLETE = "transaction_complete"
    ERROR = "error"
    TOKEN_REFRESHED = "token_refreshed"
    SESSION_EXPIRED = "session_expired"


EventHandler = Callable[..., None]


class CreditSystem:  # pylint: disable=too-many-instance-attributes,too-many-public-methods
    """Entry point of the SDK.

    Example::

        config = CreditSystemConfiguration(api_url="https://credits.example.com")
        async with CreditSystem(config) as credits:
            await credits.initialize()
            await credits.login("user@example.com", "secret")
            balance = await credits.get_balance()
    """

    def __init__(
        self,
        config: CreditSystemConfiguration,
        host_context: Optional[HostContext] = None,
        api_client: Optional[AsyncApiClient] = None,
        scheduler: Optional[RefreshScheduler] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the credit system.

        Args:
            config: SDK configuration
            host_context: Embedding page capability; defaults to a top-level process
            api_client: HTTP transport; built from ``config`` by default
            scheduler: Token renewal scheduler; defaults to the event loop scheduler
            clock: Returns the current aware UTC time
        """
        self.config = config
        self._logger = config.logger
        self._clock = clock
        self._host = host_context or TopLevelHostContext()

        self.api_client = api_client or AsyncApiClient(
            config.api_url, timeout=config.request_timeout, logger=self._logger
        )
        self.session = SessionManager(
            config,
            self.api_client,
            host_context=self._host,
            scheduler=scheduler,
            clock=clock,
            on_session_expired=self._handle_session_expired,
            on_token_refreshed=self._handle_token_refreshed,
            logger=self._logger,
        )
        self._injector = CredentialInjector(
            self.session,
            self.api_client,
            auto_refresh=config.auto_refresh_token,
            logger=self._logger,
        )
        self.ledger = AsyncLedgerApiClient(
            self._injector,
            self.session,
            self._host,
            parent_origin=config.parent_origin,
            retry_attempts=config.balance_retry_attempts,
            retry_delay=config.balance_retry_delay,
            logger=self._logger,
        )

        self._handlers: Dict[CreditSystemEvent, List[EventHandler]] = {}
        self._balance_cache: Optional[Balance] = None
        self._balance_fetched_at: Optional[datetime] = None
        self._balance_refresher = AsyncDebouncer(
            BALANCE_REFRESH_DELAY, self._refresh_balance_silently
        )
        self._unsubscribe_parent: Optional[Unsubscribe] = None

    # events

    def on(self, event: Union[CreditSystemEvent, str], handler: EventHandler) -> None:
        """Register ``handler`` for ``event``."""
        self._handlers.setdefault(CreditSystemEvent(event), []).append(handler)

    def off(
        self,
        event: Union[CreditSystemEvent, str],
        handler: Optional[EventHandler] = None,
    ) -> None:
        """Remove ``handler`` from ``event``, or every handler when none is given."""
        event = CreditSystemEvent(event)
        if handler is None:
            self._handlers.pop(event, None)
            return
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def _emit(self, event: CreditSystemEvent, *args: Any) -> None:
        for handler in list(self._handlers.get(event, [])):
            self._call_safely(handler, *args, name=event.value)

    def _call_safely(self, handler: Callable[..., Any], *args: Any, name: str) -> None:
        try:
            handler(*args)
        except Exception:  # pylint: disable=broad-except
            self._logger.exception("Error in %s handler", name)

    def _emit_error(self, error: CreditSystemError) -> None:
        self._emit(CreditSystemEvent.ERROR, error)
        if self.config.on_error is not None:
            self._call_safely(self.config.on_error, error, name="on_error")

    @contextmanager
    def _reporting(self) -> Iterator[None]:
        try:
            yield
        except CreditSystemError as e:
            self._emit_error(e)
            raise
        except Exception as e:
            error = error_from_response({"error": str(e) or type(e).__name__})
            self._emit_error(error)
            raise error from e

    # lifecycle

    async def initialize(self) -> None:
        """Resolve the starting session; safe to call more than once."""
        if self.session.is_initialized:
            self._logger.debug("Credit system already initialized")
            return

        if self._host.is_nested() and self._unsubscribe_parent is None:
            self._unsubscribe_parent = self._host.on_message(self._handle_parent_message)

        with self._reporting():
            await self.session.initialize()

        self._logger.info(
            "Credit system initialized (mode=%s, authenticated=%s)",
            self.session.operating_mode.value,
            self.session.is_authenticated(),
        )
        if self.session.is_authenticated():
            self._emit(CreditSystemEvent.AUTHENTICATED, self.session.get_user())
            self._balance_refresher.trigger()

    async def login(self, email: str, password: str) -> User:
        with self._reporting():
            user = await self.session.authenticate({"email": email, "password": password})
        self._emit(CreditSystemEvent.AUTHENTICATED, user)
        self._balance_refresher.trigger()
        return user

    async def login_with_token(
        self,
        token: str,
        trust: bool = False,
        user: Optional[User] = None,
    ) -> User:
        """Log in with a pre-issued JWT.

        Args:
            token: The JWT
            trust: Skip the backend check; the user comes from ``user`` or the token claims
            user: User data the parent frame sent along with ``token``
        """
        with self._reporting():
            user = await self.session.authenticate_with_token(token, trust=trust, user=user)
        self._emit(CreditSystemEvent.AUTHENTICATED, user)
        self._balance_refresher.trigger()
        return user

    def logout(self) -> None:
        self.session.logout()
        self._balance_refresher.cancel()
        self._drop_balance_cache()

    @property
    def operating_mode(self) -> OperatingMode:
        return self.session.operating_mode

    def is_authenticated(self) -> bool:
        return self.session.is_authenticated()

    def get_user(self) -> Optional[User]:
        return self.session.get_user()

    async def refresh_token(self) -> Credential:
        with self._reporting():
            self.session.ensure_authenticated()
            credential = await self.session.refresh()
        self._logger.info("Token refreshed manually")
        return credential

    def set_log_level(self, level: Union[int, str]) -> None:
        self._logger.setLevel(level)

    async def close(self) -> None:
        """Release the transport and stop listening to the parent."""
        self._balance_refresher.cancel()
        self.session.logout()
        if self._unsubscribe_parent is not None:
            self._unsubscribe_parent()
            self._unsubscribe_parent = None
        await self.api_client.close()

    async def __aenter__(self) -> "CreditSystem":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # ledger

    async def get_balance(self, use_cache: bool = True) -> Balance:
        """Current balance, served from cache while it is fresh.

        Args:
            use_cache: Return the cached balance if it is younger than
                ``balance_cache_ttl`` seconds
        """
        with self._reporting():
            self.session.ensure_authenticated()
            if use_cache and self._balance_cache_is_fresh():
                return self._balance_cache
            balance = await self.ledger.get_balance()
        self._update_balance(balance)
        return balance

    async def spend(
        self,
        amount: float,
        description: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Transaction:
        with self._reporting():
            validate_amount(amount)
            self.session.ensure_authenticated()
            request = SpendRequest(amount=amount, description=description or "", metadata=metadata)
            transaction = await self.ledger.spend(request)
        self._transaction_completed(transaction)
        return transaction

    async def add_credits(
        self,
        amount: float,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Transaction:
        with self._reporting():
            validate_amount(amount)
            self.session.ensure_authenticated()
            request = AddCreditsRequest(amount=amount, description=description, metadata=metadata)
            transaction = await self.ledger.add_credits(request)
        self._transaction_completed(transaction)
        return transaction

    async def get_transaction_history(
        self,
        params: Union[TransactionHistoryParams, Mapping[str, Any], None] = None,
    ) -> List[Transaction]:
        with self._reporting():
            self.session.ensure_authenticated()
            return await self.ledger.get_transaction_history(params)

    async def get_transaction(self, transaction_id: Union[int, str]) -> Transaction:
        with self._reporting():
            self.session.ensure_authenticated()
            return await self.ledger.get_transaction(transaction_id)

    async def refund_transaction(
        self,
        transaction_id: Union[int, str],
        reason: Optional[str] = None,
    ) -> Transaction:
        with self._reporting():
            self.session.ensure_authenticated()
            transaction = await self.ledger.refund(transaction_id, reason)
        self._transaction_completed(transaction)
        return transaction

    async def has_sufficient_credits(self, amount: float) -> bool:
        balance = await self.get_balance()
        return balance.balance >= amount

    # balance cache

    def _balance_cache_is_fresh(self) -> bool:
        if self._balance_cache is None or self._balance_fetched_at is None:
            return False
        age = (self._clock() - self._balance_fetched_at).total_seconds()
        return age < self.config.balance_cache_ttl

    def _update_balance(self, balance: Balance) -> None:
        self._balance_cache = balance
        self._balance_fetched_at = self._clock()
        self._emit(CreditSystemEvent.BALANCE_CHANGED, balance.balance)
        if self.config.on_balance_update is not None:
            self._call_safely(
                self.config.on_balance_update, balance.balance, name="on_balance_update"
            )

    def _drop_balance_cache(self) -> None:
        self._balance_cache = None
        self._balance_fetched_at = None

    def _transaction_completed(self, transaction: Transaction) -> None:
        self._drop_balance_cache()
        self._emit(CreditSystemEvent.TRANSACTION_COMPLETE, transaction)
        self._balance_refresher.trigger()

    async def _refresh_balance_silently(self) -> None:
        if not self.session.is_authenticated():
            return
        try:
            balance = await self.ledger.get_balance()
        except CreditSystemError as e:
            self._logger.debug("Silent balance refresh failed: %s", e)
            return
        self._update_balance(balance)

    # callbacks

    def _handle_session_expired(self) -> None:
        self._drop_balance_cache()
        self._emit(CreditSystemEvent.SESSION_EXPIRED)
        if self.config.on_token_expired is not None:
            self._call_safely(self.config.on_token_expired, name="on_token_expired")

    def _handle_token_refreshed(self, credential: Credential) -> None:
        self._emit(CreditSystemEvent.TOKEN_REFRESHED, credential)

    def _handle_parent_message(self, event: HostMessage) -> None:
        origin = self.config.parent_origin
        if origin and event.origin != origin:
            return
        if not isinstance(event.data, dict):
            return
        try:
            message = ParentMessage.model_validate(event.data)
        except PydanticValidationError:
            self._logger.debug("Ignored malformed parent message")
            return

        if message.message_type == MessageType.BALANCE_UPDATE and message.balance is not None:
            self._update_balance(Balance(balance=message.balance))
        elif message.message_type in (MessageType.AUTHENTICATION_ERROR, MessageType.ERROR):
            error = error_from_response(
                {"error": message.error or message.message or "Error reported by parent"}
            )
            self._logger.error("Parent reported an error: %s", error)
            self._emit_error(error)
