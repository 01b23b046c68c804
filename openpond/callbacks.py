"""
Callback registry for delivered messages, errors and connection changes.
"""

import logging
from typing import Optional, Callable, Any

logger = logging.getLogger(__name__)

MessageHandler = Callable[[Any], None]
ErrorHandler = Callable[[Exception], None]
StateHandler = Callable[[Any], None]


class CallbackRegistry:
    """
    Single-slot handlers, one per kind.

    Registering a handler replaces the previous one; the replacement takes
    effect on the next dispatch. Handlers run synchronously on the delivery
    task and should not block. A handler that raises never stops delivery:
    the failure goes to the error handler, or to the log if that fails too.
    """

    def __init__(self):
        self._message_handler: Optional[MessageHandler] = None
        self._error_handler: Optional[ErrorHandler] = None
        self._state_handler: Optional[StateHandler] = None

    def on_message(self, handler: Optional[MessageHandler]) -> None:
        """Set the handler for received messages (None clears it)."""
        self._message_handler = handler

    def on_error(self, handler: Optional[ErrorHandler]) -> None:
        """Set the handler for background errors (None clears it)."""
        self._error_handler = handler

    def on_connection_change(self, handler: Optional[StateHandler]) -> None:
        """Set the handler for connection state changes (None clears it)."""
        self._state_handler = handler

    def dispatch_message(self, message: Any) -> bool:
        """Deliver a message. Returns False if the handler raised."""
        handler = self._message_handler
        if handler is None:
            logger.debug(f"No message handler registered; message {getattr(message, 'id', '?')} dropped")
            return True
        try:
            handler(message)
            return True
        except Exception as e:
            logger.warning(f"Message handler failed: {e}")
            self.dispatch_error(e)
            return False

    def dispatch_state(self, state: Any) -> None:
        handler = self._state_handler
        if handler is None:
            return
        try:
            handler(state)
        except Exception as e:
            logger.warning(f"Connection handler failed: {e}")
            self.dispatch_error(e)

    def dispatch_error(self, error: Exception) -> None:
        """Report an error. Never raises."""
        handler = self._error_handler
        if handler is None:
            logger.debug(f"No error handler registered: {error}")
            return
        try:
            handler(error)
        except Exception as e:
            logger.error(f"Error handler failed while reporting {error!r}: {e}")
