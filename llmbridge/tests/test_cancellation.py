"""Tests for cancellation functionality.

Tests for CancelToken, CancelledException and interruptible_sleep.
"""

import threading
import time
import unittest
from unittest.mock import MagicMock

from llmbridge.model_provider.types import CancelledException, CancelToken
from llmbridge.retry_utils import interruptible_sleep


class TestCancelToken(unittest.TestCase):
    """Tests for CancelToken class."""

    def test_initial_state_not_cancelled(self):
        """Token starts in non-cancelled state."""
        token = CancelToken()
        self.assertFalse(token.is_cancelled)

    def test_cancel_is_idempotent(self):
        """Multiple calls to cancel() have no effect."""
        token = CancelToken()
        callback = MagicMock()
        token.on_cancel(callback)

        token.cancel()
        token.cancel()

        self.assertTrue(token.is_cancelled)
        callback.assert_called_once()

    def test_raise_if_cancelled(self):
        """raise_if_cancelled() raises only once cancelled."""
        token = CancelToken()
        token.raise_if_cancelled()

        token.cancel()
        with self.assertRaises(CancelledException):
            token.raise_if_cancelled()

    def test_wait_returns_true_when_cancelled(self):
        """wait() returns True when cancelled from another thread."""
        token = CancelToken()

        def cancel_after_delay():
            time.sleep(0.05)
            token.cancel()

        thread = threading.Thread(target=cancel_after_delay)
        thread.start()

        self.assertTrue(token.wait(timeout=1.0))
        thread.join()

    def test_wait_returns_false_on_timeout(self):
        token = CancelToken()
        self.assertFalse(token.wait(timeout=0.05))

    def test_on_cancel_immediate_when_already_cancelled(self):
        """on_cancel() callback is called immediately if already cancelled."""
        token = CancelToken()
        token.cancel()

        callback = MagicMock()
        token.on_cancel(callback)
        callback.assert_called_once()

    def test_unregistered_callback_not_called(self):
        token = CancelToken()
        kept, removed = MagicMock(), MagicMock()
        token.on_cancel(kept)
        unregister = token.on_cancel(removed)

        unregister()
        unregister()
        token.cancel()

        kept.assert_called_once()
        removed.assert_not_called()

    def test_failing_callback_does_not_block_others(self):
        token = CancelToken()
        failing = MagicMock(side_effect=RuntimeError("boom"))
        other = MagicMock()
        token.on_cancel(failing)
        token.on_cancel(other)

        token.cancel()

        other.assert_called_once()


class TestCancelledException(unittest.TestCase):
    """Tests for CancelledException class."""

    def test_default_message(self):
        self.assertEqual(str(CancelledException()), "Operation was cancelled")

    def test_custom_message(self):
        exc = CancelledException("Custom cancellation reason")
        self.assertEqual(exc.message, "Custom cancellation reason")


class TestInterruptibleSleep(unittest.TestCase):
    """Tests for interruptible_sleep function."""

    def test_normal_sleep_with_token(self):
        """Sleeps the full time when the token is not cancelled."""
        token = CancelToken()
        start = time.monotonic()
        interruptible_sleep(0.05, cancel_token=token)
        self.assertGreaterEqual(time.monotonic() - start, 0.04)

    def test_interrupted_by_cancellation(self):
        """Sleep is interrupted when token is cancelled."""
        token = CancelToken()

        def cancel_after_delay():
            time.sleep(0.05)
            token.cancel()

        thread = threading.Thread(target=cancel_after_delay)
        thread.start()

        start = time.monotonic()
        with self.assertRaises(CancelledException):
            interruptible_sleep(5.0, cancel_token=token)

        self.assertLess(time.monotonic() - start, 1.0)
        thread.join()

    def test_already_cancelled_token(self):
        """Raises immediately if token already cancelled."""
        token = CancelToken()
        token.cancel()

        start = time.monotonic()
        with self.assertRaises(CancelledException):
            interruptible_sleep(5.0, cancel_token=token)
        self.assertLess(time.monotonic() - start, 0.5)


if __name__ == "__main__":
    unittest.main()
