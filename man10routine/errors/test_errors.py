"""
Tests for the routine error handling system.
"""

import logging
import unittest
from datetime import datetime
from unittest.mock import Mock

from man10routine.errors.errors import (
    RoutineError, MultiError, ErrorCode, Severity,
    new_transient_error, new_timeout_error, new_not_found_error,
    new_restoration_error,
    retry_transient, ErrorHandler
)


class TestRoutineError(unittest.TestCase):
    """Test RoutineError functionality."""

    def test_basic_error(self):
        """Test basic error creation."""
        err = RoutineError(
            ErrorCode.BACKUP_OPERATION,
            "backup",
            "snapshot",
            "snapshot failed"
        )

        self.assertEqual(err.code, ErrorCode.BACKUP_OPERATION)
        self.assertEqual(err.component, "backup")
        self.assertEqual(err.operation, "snapshot")
        self.assertEqual(err.severity, Severity.HIGH)
        self.assertFalse(err.retryable)
        self.assertIsInstance(err.timestamp, datetime)

    def test_error_with_cause(self):
        """Test error with underlying cause."""
        cause = ConnectionResetError("peer reset")
        err = new_transient_error("console", "connect", "connection failed", cause)

        self.assertTrue(err.retryable)
        self.assertEqual(err.severity, Severity.MEDIUM)
        self.assertIn("peer reset", str(err))
        self.assertIn("[TRANSIENT_NETWORK]", str(err))

    def test_restoration_error_is_critical(self):
        """Test restoration failures carry the application and highest severity."""
        err = new_restoration_error("mcproxy-dan5", "resume failed")

        self.assertEqual(err.code, ErrorCode.RESTORATION_FAILURE)
        self.assertEqual(err.severity, Severity.CRITICAL)
        self.assertEqual(err.context["application"], "mcproxy-dan5")
        self.assertFalse(err.retryable)

    def test_error_serialization(self):
        """Test error serialization."""
        err = new_timeout_error("workload", "restart", "not ready").with_context("workload", "lobby")

        data = err.to_dict()
        self.assertEqual(data["code"], "TIMEOUT")
        self.assertEqual(data["context"]["workload"], "lobby")


class TestRetryability(unittest.TestCase):

    def test_only_transient_network_errors_are_retryable(self):
        self.assertTrue(new_transient_error("kube", "get", "reset").retryable)
        self.assertFalse(new_not_found_error("kube", "get", "missing").retryable)
        self.assertFalse(new_timeout_error("kube", "poll", "deadline").retryable)
        self.assertFalse(new_restoration_error("lobby", "patch failed").retryable)


class TestMultiError(unittest.TestCase):
    """Test MultiError functionality."""

    def test_empty_multi_error(self):
        multi_err = MultiError("gitops", "release_all")

        self.assertFalse(multi_err.has_errors())
        self.assertEqual(str(multi_err), "no errors")

    def test_multi_error_with_errors(self):
        multi_err = MultiError("gitops", "release_all")
        multi_err.add(new_restoration_error("lobby", "resume failed"))
        multi_err.add(new_restoration_error("shigen", "resume failed"))

        self.assertTrue(multi_err.has_errors())
        self.assertIn("multiple errors (2)", str(multi_err))


class TestRetryTransient(unittest.IsolatedAsyncioTestCase):
    """Test the single bounded retry helper."""

    async def test_retries_once_after_transient_error(self):
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) == 1:
                raise new_transient_error("console", "connect", "refused")
            return "ok"

        result = await retry_transient(flaky, backoff=0)

        self.assertEqual(result, "ok")
        self.assertEqual(len(calls), 2)

    async def test_second_transient_failure_propagates(self):
        calls = []

        async def always_down():
            calls.append(1)
            raise new_transient_error("console", "connect", "refused")

        with self.assertRaises(RoutineError):
            await retry_transient(always_down, backoff=0)
        self.assertEqual(len(calls), 2)

    async def test_non_retryable_error_is_not_retried(self):
        calls = []

        async def missing():
            calls.append(1)
            raise new_not_found_error("kube", "get", "no such statefulset")

        with self.assertRaises(RoutineError) as ctx:
            await retry_transient(missing, backoff=0)
        self.assertEqual(ctx.exception.code, ErrorCode.RESOURCE_NOT_FOUND)
        self.assertEqual(len(calls), 1)


class TestErrorHandler(unittest.TestCase):
    """Test ErrorHandler functionality."""

    def test_handle_routine_error(self):
        original_err = new_timeout_error("workload", "restart", "not ready")
        handler = ErrorHandler("orchestrator")

        self.assertIs(handler.handle(original_err, "restart"), original_err)

    def test_handle_regular_error(self):
        regular_err = ValueError("regular error")
        handled_err = ErrorHandler("orchestrator").handle(regular_err, "restart")

        self.assertEqual(handled_err.code, ErrorCode.UNKNOWN)
        self.assertEqual(handled_err.component, "orchestrator")
        self.assertEqual(handled_err.cause, regular_err)

    def test_critical_errors_log_at_error_level(self):
        mock_logger = Mock(spec=logging.Logger)
        ErrorHandler("gitops", mock_logger).handle(new_restoration_error("lobby", "resume failed"), "resume")

        mock_logger.error.assert_called_once()
        mock_logger.warning.assert_not_called()

    def test_medium_errors_log_at_warning_level(self):
        mock_logger = Mock(spec=logging.Logger)
        ErrorHandler("console", mock_logger).handle(new_timeout_error("console", "send", "slow"), "send")

        mock_logger.warning.assert_called_once()


if __name__ == '__main__':
    unittest.main()
