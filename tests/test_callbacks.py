"""
Tests for the callback registry.
"""

import logging

from openpond.callbacks import CallbackRegistry
from openpond.delivery import ConnectionState

from conftest import make_message


class TestCallbackRegistry:

    def test_dispatch_without_handlers(self):
        registry = CallbackRegistry()
        assert registry.dispatch_message(make_message("m1"))
        registry.dispatch_state(ConnectionState.LIVE)
        registry.dispatch_error(RuntimeError("nobody listening"))

    def test_registration_replaces_previous_handler(self):
        registry = CallbackRegistry()
        first, second = [], []

        registry.on_message(first.append)
        registry.dispatch_message(make_message("m1"))
        registry.on_message(second.append)
        registry.dispatch_message(make_message("m2"))

        assert [m.id for m in first] == ["m1"]
        assert [m.id for m in second] == ["m2"]

    def test_clearing_handler(self):
        registry = CallbackRegistry()
        received = []
        registry.on_message(received.append)
        registry.on_message(None)

        registry.dispatch_message(make_message("m1"))
        assert received == []

    def test_failing_message_handler_routed_to_error_handler(self):
        registry = CallbackRegistry()
        errors = []
        registry.on_error(errors.append)

        def handler(message):
            raise ValueError("boom")

        registry.on_message(handler)

        assert registry.dispatch_message(make_message("m1")) is False
        assert len(errors) == 1
        assert isinstance(errors[0], ValueError)

    def test_failing_state_handler_routed_to_error_handler(self):
        registry = CallbackRegistry()
        errors = []
        registry.on_error(errors.append)
        registry.on_connection_change(lambda state: 1 / 0)

        registry.dispatch_state(ConnectionState.POLLING)

        assert isinstance(errors[0], ZeroDivisionError)

    def test_failing_error_handler_only_logged(self, caplog):
        registry = CallbackRegistry()

        def handler(error):
            raise RuntimeError("error handler broken")

        registry.on_error(handler)

        with caplog.at_level(logging.ERROR, logger="openpond.callbacks"):
            registry.dispatch_error(ValueError("original"))

        assert "error handler broken" in caplog.text
