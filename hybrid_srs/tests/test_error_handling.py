import asyncio
import unittest

from hybrid_srs.common.error_handling import (
    AsyncErrorTracer,
    ConcurrencyConflictError,
    DependencyTimeoutError,
    EngineError,
    ErrorCode,
    StorageError,
    ValidationError,
    convert_exception,
    error_response,
    retry,
    with_timeout,
)


class TestErrors(unittest.TestCase):
    """Test the exception hierarchy and API payloads."""

    def test_validation_error_payload(self):
        error = ValidationError("limit must be at least 1", field="limit", details={"value": 0})
        payload = error_response(error)
        self.assertEqual(payload["status"], "error")
        self.assertEqual(payload["code"], "validation_error")
        self.assertEqual(payload["details"], {"value": 0, "field": "limit"})

    def test_cause_is_described(self):
        error = StorageError("write failed", cause=OSError("disk full"))
        payload = error_response(error)
        self.assertEqual(payload["details"]["cause"], {"type": "OSError", "message": "disk full"})
        self.assertIn("caused by OSError", str(error))

    def test_plain_exceptions_are_converted(self):
        payload = error_response(RuntimeError("boom"), include_details=False)
        self.assertEqual(payload, {"status": "error", "code": "unknown_error", "message": "boom"})

    def test_convert_keeps_engine_errors(self):
        error = ConcurrencyConflictError(entity="review_card", entity_id="u:v", expected_version=3)
        converted = convert_exception(error, context={"attempt": 2})
        self.assertIs(converted, error)
        self.assertEqual(converted.context["attempt"], 2)
        self.assertEqual(converted.code, ErrorCode.CONCURRENCY_CONFLICT)

    def test_to_dict_is_json_ready(self):
        data = ValidationError("bad").to_dict()
        self.assertEqual(data["code"], "validation_error")
        self.assertEqual(data["exception_type"], "ValidationError")
        self.assertIsInstance(data["timestamp"], str)


class TestRetry(unittest.TestCase):

    def setUp(self):
        self.loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self.loop)

    def tearDown(self):
        self.loop.close()

    def test_async_retry_until_success(self):
        attempts = []

        @retry(max_retries=3, retry_delay=0.0)
        async def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise ConnectionError("try again")
            return "ok"

        self.assertEqual(self.loop.run_until_complete(flaky()), "ok")
        self.assertEqual(len(attempts), 3)

    def test_retries_exhausted(self):
        attempts = []
        delays = []

        @retry(max_retries=2, retry_delay=0.0, on_retry=lambda n, e, d: delays.append(d))
        def always_fails():
            attempts.append(1)
            raise ConnectionError("down")

        with self.assertRaises(ConnectionError):
            always_fails()
        self.assertEqual(len(attempts), 3)
        self.assertEqual(len(delays), 2)

    def test_ignored_exceptions_are_not_retried(self):
        attempts = []

        @retry(max_retries=5, retry_delay=0.0, ignore_exceptions=(ValidationError,))
        async def invalid():
            attempts.append(1)
            raise ValidationError("bad input")

        with self.assertRaises(ValidationError):
            self.loop.run_until_complete(invalid())
        self.assertEqual(len(attempts), 1)


class TestTimeoutsAndTracing(unittest.TestCase):

    def setUp(self):
        self.loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self.loop)

    def tearDown(self):
        self.loop.close()

    def test_with_timeout(self):
        async def quick():
            return 42

        self.assertEqual(self.loop.run_until_complete(with_timeout(quick(), 1.0, "svc", "op")), 42)

        with self.assertRaises(DependencyTimeoutError) as ctx:
            self.loop.run_until_complete(with_timeout(asyncio.sleep(1), 0.01, "graph", "edges"))
        self.assertEqual(ctx.exception.details["service"], "graph")
        self.assertEqual(ctx.exception.details["timeout_seconds"], 0.01)

    def test_tracer_wraps_foreign_errors(self):
        async def failing():
            async with AsyncErrorTracer("cards.get", context={"user_id": "u"}, capture_as=StorageError):
                raise OSError("connection reset")

        with self.assertRaises(StorageError) as ctx:
            self.loop.run_until_complete(failing())
        self.assertEqual(ctx.exception.context, {"user_id": "u", "operation": "cards.get"})
        self.assertIsInstance(ctx.exception.cause, OSError)

    def test_tracer_passes_engine_errors_through(self):
        async def conflicting():
            async with AsyncErrorTracer("cards.save", capture_as=StorageError):
                raise ConcurrencyConflictError(entity="review_card", entity_id="u:v")

        with self.assertRaises(ConcurrencyConflictError):
            self.loop.run_until_complete(conflicting())

    def test_tracer_without_capture_converts(self):
        async def failing():
            async with AsyncErrorTracer("anything"):
                raise KeyError("x")

        with self.assertRaises(EngineError) as ctx:
            self.loop.run_until_complete(failing())
        self.assertEqual(ctx.exception.code, ErrorCode.UNKNOWN_ERROR)


if __name__ == "__main__":
    unittest.main()
