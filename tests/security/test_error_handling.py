"""
Error Handling Security Tests.

These tests verify that:
1. All errors have machine-readable codes
2. Error messages don't leak key material or plaintext
3. Error codes are registered in the taxonomy
4. Structured logging filters sensitive data
5. Retry policies only retry what they are told to
"""

import asyncio
import json
import logging
from io import StringIO

import pytest

from fhefield.errors import (
    CALLER_ERRORS,
    ERROR_CODES,
    ArityError,
    BatchSizeExceededError,
    CircuitDependencyError,
    CircuitNotFoundError,
    CircuitTooDeepError,
    CustodianError,
    DecryptionFailedError,
    FheFieldError,
    InitializationFailedError,
    InvalidCiphertextFormatError,
    InvalidSchemeError,
    KeyGenerationError,
    KeyNotFoundError,
    LedgerAnchorError,
    NoiseOverflowError,
    UnsupportedOperationError,
    UserNotFoundError,
    validate_error_code,
)
from fhefield.hardening.recovery import BackoffStrategy, RetryConfig, RetryPolicy
from fhefield.logging import (
    DevelopmentFormatter,
    LogContext,
    StructuredFormatter,
    configure_logging,
    get_logger,
)
from fhefield.utils.config import FheFieldSettings


def _capture(logger_name: str, formatter: logging.Formatter):
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(formatter)
    logger = logging.getLogger(logger_name)
    logger.handlers = [handler]
    logger.setLevel(logging.INFO)
    logger.propagate = False
    return logger, stream


class TestErrorTaxonomy:
    """Test error code taxonomy."""

    def test_all_errors_have_registered_codes(self):
        """All error classes should use registered error codes."""
        errors_to_test = [
            FheFieldError("test"),
            InitializationFailedError("test", scheme="tfhe"),
            InvalidSchemeError("rsa"),
            InvalidCiphertextFormatError("test", "serialized"),
            DecryptionFailedError(),
            KeyNotFoundError("0xabc", scheme="tfhe"),
            KeyGenerationError("test"),
            CustodianError("test", "store"),
            UnsupportedOperationError("divide"),
            ArityError("subtract", "exactly 2", 3),
            NoiseOverflowError(150.0, 100.0, operation="multiply"),
            CircuitTooDeepError(21, 20),
            CircuitDependencyError("unknown wire", ["x"]),
            CircuitNotFoundError("0x01"),
            BatchSizeExceededError(51, 50),
            UserNotFoundError("user-1"),
            LedgerAnchorError("test", "ssn"),
        ]

        for error in errors_to_test:
            assert error.code in ERROR_CODES, f"Error code {error.code} not registered"

    def test_error_codes_are_prefixed(self):
        """All error codes should have FHE_ prefix."""
        for code in ERROR_CODES:
            assert code.startswith("FHE_"), f"Code {code} missing FHE_ prefix"

    def test_validate_error_code(self):
        assert validate_error_code("FHE_NOISE_OVERFLOW") is True
        assert validate_error_code("INVALID_CODE") is False

    def test_error_to_dict(self):
        """Errors should serialize to dict correctly."""
        error = NoiseOverflowError(150.0, 100.0, operation="multiply", request_id="req-456")
        d = error.to_dict()

        assert d["code"] == "FHE_NOISE_OVERFLOW"
        assert "150.00" in d["message"]
        assert d["details"] == {"noise_level": 150.0, "max_noise": 100.0, "operation": "multiply"}
        assert d["request_id"] == "req-456"
        json.dumps(d)

    def test_caller_errors_are_fhe_errors(self):
        for error_class in CALLER_ERRORS:
            assert issubclass(error_class, FheFieldError)


class TestErrorSecurityInvariants:
    """Test that errors don't leak sensitive information."""

    def test_error_str_format(self):
        """Error string should include code and request_id."""
        s = str(KeyGenerationError("test", request_id="req-123"))

        assert "[FHE_KEYGEN_FAILED]" in s
        assert "req-123" in s

    def test_user_not_found_hides_user_id_from_message(self):
        error = UserNotFoundError("alice@example.com")
        assert "alice@example.com" not in error.message
        assert error.details["user_id"] == "alice@example.com"

    def test_key_errors_no_key_material(self):
        error = KeyNotFoundError("0xabc", scheme="tfhe")
        assert set(error.details) == {"identity", "key_type", "scheme"}

    def test_circuit_dependency_wires_are_sorted(self):
        error = CircuitDependencyError("unknown wires", ["z", "a"])
        assert error.details["wires"] == ["a", "z"]


class TestStructuredLogging:
    """Test structured logging functionality."""

    def test_structured_formatter_json_output(self):
        """StructuredFormatter should produce valid JSON."""
        logger, stream = _capture("test.fhe.structured", StructuredFormatter())

        logger.info("Test message", extra={"request_id": "abc123"})

        data = json.loads(stream.getvalue())
        assert data["level"] == "INFO"
        assert data["message"] == "Test message"
        assert "timestamp" in data
        assert data["extra"]["request_id"] == "abc123"

    def test_sensitive_data_filtering(self):
        """Key material and plaintext never reach the sink."""
        logger, stream = _capture("test.fhe.sensitive", StructuredFormatter())

        logger.info(
            "Key loaded",
            extra={
                "identity": "0xabc",
                "private_key": "deadbeef",
                "evaluation_key": "cafebabe",
                "field": {"name": "salary", "plaintext": "5000"},
            },
        )

        data = json.loads(stream.getvalue())
        assert data["extra"]["identity"] == "0xabc"
        assert data["extra"]["private_key"] == "[REDACTED]"
        assert data["extra"]["evaluation_key"] == "[REDACTED]"
        assert data["extra"]["field"] == {"name": "salary", "plaintext": "[REDACTED]"}

    def test_log_context_fields_are_attached(self):
        logger, stream = _capture("test.fhe.context", StructuredFormatter())

        with LogContext(user_id="user-1", operation="encrypt_field"):
            logger.info("inside")

        data = json.loads(stream.getvalue())
        assert data["extra"]["user_id"] == "user-1"
        assert data["extra"]["operation"] == "encrypt_field"

    def test_development_formatter_prefixes_request_id(self):
        logger, stream = _capture("test.fhe.dev", DevelopmentFormatter())

        with LogContext(request_id="0123456789abcdef"):
            logger.info("hello")

        assert "[01234567] hello" in stream.getvalue()

    def test_configure_logging(self):
        stream = StringIO()
        configure_logging(level="DEBUG", json_format=True, stream=stream)
        try:
            get_logger("tests").debug("configured")
            data = json.loads(stream.getvalue())
            assert data["logger"] == "fhefield.tests"
        finally:
            configure_logging(level="WARNING", json_format=False)


class TestLogContext:
    """Test context nesting and task isolation."""

    def test_nesting_restores_outer_context(self):
        with LogContext(request_id="outer"):
            with LogContext(request_id="inner", circuit_id="0x01"):
                assert LogContext.get_current() == {"request_id": "inner", "circuit_id": "0x01"}
            assert LogContext.get_current() == {"request_id": "outer"}
        assert LogContext.get_current() == {}

    @pytest.mark.asyncio
    async def test_tasks_do_not_share_context(self):
        seen = {}

        async def worker(name):
            with LogContext(user_id=name):
                await asyncio.sleep(0)
                seen[name] = LogContext.get_current()["user_id"]

        await asyncio.gather(worker("a"), worker("b"))
        assert seen == {"a": "a", "b": "b"}


class TestRetryPolicy:
    """Test backoff and retry classification."""

    def test_exponential_delays(self):
        policy = RetryPolicy(
            RetryConfig(base_delay_seconds=0.5, max_delay_seconds=3.0, backoff_strategy=BackoffStrategy.EXPONENTIAL)
        )
        assert [policy.calculate_delay(i) for i in range(4)] == [0.5, 1.0, 2.0, 3.0]

    def test_deterministic_jitter(self, monkeypatch):
        monkeypatch.setenv("FHE_DETERMINISTIC", "true")
        policy = RetryPolicy(RetryConfig(base_delay_seconds=1.0), func_name="load")
        first = policy.calculate_delay(2)
        assert policy.calculate_delay(2) == first
        assert 3.0 <= first <= 5.0

    def test_retries_until_success(self):
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise CustodianError("timeout", "retrieve")
            return "ok"

        policy = RetryPolicy(RetryConfig(max_retries=3, base_delay_seconds=0.0, retryable_exceptions=(CustodianError,)))
        assert policy.execute(flaky) == "ok"
        assert len(calls) == 3

    def test_non_retryable_fails_immediately(self):
        calls = []

        def broken():
            calls.append(1)
            raise InvalidSchemeError("rsa")

        policy = RetryPolicy(
            RetryConfig(max_retries=3, base_delay_seconds=0.0, non_retryable_exceptions=CALLER_ERRORS)
        )
        with pytest.raises(InvalidSchemeError):
            policy.execute(broken)
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_async_retries_exhausted(self):
        calls = []

        async def always_failing():
            calls.append(1)
            raise InitializationFailedError("unavailable")

        policy = RetryPolicy(
            RetryConfig(
                max_retries=2,
                base_delay_seconds=0.0,
                retryable_exceptions=(InitializationFailedError,),
            )
        )
        with pytest.raises(InitializationFailedError):
            await policy.execute_async(always_failing)
        assert len(calls) == 3


class TestProductionConfig:
    """Test production readiness checks."""

    def test_production_requires_master_key(self):
        config = FheFieldSettings(ENVIRONMENT="production", MASTER_KEY_HEX=None)
        assert any("MASTER_KEY_HEX" in issue for issue in config.validate_production_config())

    def test_master_key_length(self):
        config = FheFieldSettings(MASTER_KEY_HEX="00" * 16)
        assert any("32 bytes" in issue for issue in config.validate_production_config())

    def test_valid_master_key(self):
        config = FheFieldSettings(MASTER_KEY_HEX="11" * 32)
        assert config.master_key() == b"\x11" * 32
        assert config.validate_production_config() == []
