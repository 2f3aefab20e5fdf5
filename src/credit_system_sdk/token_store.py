"""Holds the current credential and answers authenticated-state queries."""

import logging
from datetime import datetime
from typing import Callable, Optional

from .models import Credential, TokenStatus, User
from .scheduler import DueCallback, RefreshScheduler
from .utils import utc_now
from .validators import is_expired


class TokenStore:
    """Single owner of the session credential.

    The only side effect beyond state is driving the scheduler: ``set`` always
    disarms before re-arming, ``clear`` always disarms.
    """

    def __init__(
        self,
        scheduler: RefreshScheduler,
        refresh_buffer: float = 60.0,
        auto_refresh: bool = True,
        clock: Callable[[], datetime] = utc_now,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        """Initialize the token store.

        Args:
            scheduler: Scheduler that renews the credential before expiry
            refresh_buffer: Seconds before expiry at which renewal is due
            auto_refresh: Whether ``set`` arms the scheduler at all
            clock: Returns the current aware UTC time
            logger: Logger to use instead of the module logger
        """
        self._scheduler = scheduler
        self._refresh_buffer = refresh_buffer
        self._auto_refresh = auto_refresh
        self._clock = clock
        self._logger = logger or logging.getLogger(__name__)
        self._credential: Optional[Credential] = None
        self.on_due: Optional[DueCallback] = None

    def set(self, credential: Credential) -> None:
        self._credential = credential
        self._scheduler.disarm()

        self._logger.debug(
            "Token set (expires_at=%s, user_id=%s)",
            credential.expires_at.isoformat() if credential.expires_at else None,
            credential.user.id if credential.user else None,
        )

        if self._auto_refresh and self.on_due is not None:
            self._scheduler.arm(credential.expires_at, self._refresh_buffer, self.on_due)

    def clear(self) -> None:
        self._credential = None
        self._scheduler.disarm()

    def is_authenticated(self, skew: float = 0.0) -> bool:
        if self._credential is None:
            return False
        return not is_expired(self._credential.expires_at, self._clock(), skew)

    def status(self) -> TokenStatus:
        if self._credential is None:
            return TokenStatus.UNAUTHENTICATED
        if is_expired(self._credential.expires_at, self._clock()):
            return TokenStatus.EXPIRED
        return TokenStatus.AUTHENTICATED

    def current(self) -> Optional[User]:
        return self._credential.user if self._credential else None

    @property
    def token(self) -> Optional[str]:
        return self._credential.token if self._credential else None

    @property
    def credential(self) -> Optional[Credential]:
        return self._credential
