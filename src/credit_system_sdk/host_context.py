"""Host context: the frame hierarchy and cross-window message channel.

The SDK never touches a browser directly. Anything it needs from the page that
embeds it goes through a ``HostContext``:

* ``is_nested()`` tells whether the SDK runs inside a child frame,
* ``send_to_parent()`` posts a message to the hosting page,
* ``on_message()`` subscribes to inbound messages and returns an unsubscribe
  callable.

``TopLevelHostContext`` is the default for processes with no parent page.
``SimulatedHostContext`` is an in-process channel used by tests and by
embedders that bridge a real message channel into Python.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HostMessage:
    """An inbound cross-frame message and the origin it came from."""

    data: Any
    origin: str


MessageHandler = Callable[[HostMessage], None]
Unsubscribe = Callable[[], None]


class HostContext(ABC):
    """Abstract capability over the embedding page."""

    @abstractmethod
    def is_nested(self) -> bool:
        """Whether the SDK runs inside a child frame."""

    @abstractmethod
    def send_to_parent(self, message: Dict[str, Any], target_origin: str = "*") -> None:
        """Post a message to the parent context."""

    @abstractmethod
    def on_message(self, handler: MessageHandler) -> Unsubscribe:
        """Register ``handler`` for inbound messages.

        Returns:
            A callable that removes the handler; calling it twice is harmless
        """


class TopLevelHostContext(HostContext):
    """Host context for a process that is not embedded in any parent."""

    def is_nested(self) -> bool:
        return False

    def send_to_parent(self, message: Dict[str, Any], target_origin: str = "*") -> None:
        logger.debug("No parent context; dropping %s message", message.get("type"))

    def on_message(self, handler: MessageHandler) -> Unsubscribe:
        return lambda: None


@dataclass
class SimulatedHostContext(HostContext):
    """In-process stand-in for a nested frame and its parent.

    Attributes:
        nested: Value returned by ``is_nested()``
        responder: Called with every outbound message and its target origin,
            playing the role of the parent page
        sent: Every outbound ``(message, target_origin)`` pair, in order
    """

    nested: bool = True
    responder: Optional[Callable[[Dict[str, Any], str], None]] = None
    sent: List[Tuple[Dict[str, Any], str]] = field(default_factory=list)
    _handlers: List[MessageHandler] = field(default_factory=list, repr=False)

    def is_nested(self) -> bool:
        return self.nested

    def send_to_parent(self, message: Dict[str, Any], target_origin: str = "*") -> None:
        self.sent.append((message, target_origin))
        if self.responder is not None:
            self.responder(message, target_origin)

    def on_message(self, handler: MessageHandler) -> Unsubscribe:
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def deliver(self, data: Any, origin: str) -> None:
        """Push an inbound message to every registered handler."""
        message = HostMessage(data=data, origin=origin)
        for handler in list(self._handlers):
            handler(message)

    @property
    def listener_count(self) -> int:
        return len(self._handlers)

    def sent_of_type(self, message_type: str) -> List[Dict[str, Any]]:
        return [message for message, _ in self.sent if message.get("type") == message_type]
