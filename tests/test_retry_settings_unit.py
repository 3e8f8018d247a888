"""
Unit tests for retry utilities, settings and logging configuration.
"""

import logging
from unittest.mock import AsyncMock

import pytest

from dirsync.config.settings import Settings, SyncSettings, get_env_bool, get_env_float, get_env_int
from dirsync.sync.errors import LockContention, SourceSchemaError, TargetRejected
from dirsync.system.logging_config import log_sync_event, setup_logging
from dirsync.utils.retry import RetryConfig, RetryExecutor, RetryStrategy, is_retryable, retry


class TestRetryConfig:
    """Backoff calculation."""

    @pytest.mark.parametrize("strategy, expected", [
        (RetryStrategy.FIXED, [1.0, 1.0, 1.0, 1.0]),
        (RetryStrategy.LINEAR, [1.0, 2.0, 3.0, 4.0]),
        (RetryStrategy.EXPONENTIAL, [1.0, 2.0, 4.0, 5.0]),
    ])
    def test_delays_without_jitter(self, strategy, expected):
        config = RetryConfig(base_delay=1.0, max_delay=5.0, strategy=strategy, jitter=False)
        assert [config.calculate_delay(attempt) for attempt in range(4)] == expected

    def test_jitter_stays_in_range_and_below_cap(self):
        config = RetryConfig(base_delay=2.0, max_delay=10.0, jitter_range=0.1)
        for _ in range(50):
            assert 1.8 <= config.calculate_delay(0) <= 2.2
            assert config.calculate_delay(10) <= 10.0

    def test_zero_base_delay(self):
        assert RetryConfig(base_delay=0).calculate_delay(3) == 0


class TestIsRetryable:
    def test_sync_error_flags(self):
        assert is_retryable(TargetRejected("503"))
        assert not is_retryable(TargetRejected("422", permanent=True))
        assert is_retryable(LockContention("held"))
        assert not is_retryable(SourceSchemaError("bad record"))

    def test_programming_errors_are_not_retried(self):
        for exc in (TypeError("t"), ValueError("v"), KeyError("k"), AttributeError("a")):
            assert not is_retryable(exc)

    def test_other_exceptions_are_retried(self):
        assert is_retryable(ConnectionError("reset"))
        assert is_retryable(TimeoutError())


class TestRetryExecutor:
    """Retry loop with an injected sleep."""

    @pytest.mark.asyncio
    async def test_retries_until_success(self):
        sleep = AsyncMock()
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise ConnectionError("reset")
            return "ok"

        executor = RetryExecutor(RetryConfig(max_attempts=3, base_delay=0.5, jitter=False), sleep=sleep)

        assert await executor.async_execute(flaky) == "ok"
        assert [c.args[0] for c in sleep.await_args_list] == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        sleep = AsyncMock()
        func = AsyncMock(side_effect=ConnectionError("down"))
        executor = RetryExecutor(RetryConfig(max_attempts=2, jitter=False), sleep=sleep)

        with pytest.raises(ConnectionError):
            await executor.async_execute(func)
        assert func.await_count == 2
        assert sleep.await_count == 1

    @pytest.mark.asyncio
    async def test_non_retryable_raises_at_once(self):
        func = AsyncMock(side_effect=TargetRejected("invalid", permanent=True))
        executor = RetryExecutor(RetryConfig(max_attempts=5), sleep=AsyncMock())

        with pytest.raises(TargetRejected):
            await executor.async_execute(func)
        assert func.await_count == 1

    @pytest.mark.asyncio
    async def test_configured_exception_lists(self):
        config = RetryConfig(
            max_attempts=3,
            jitter=False,
            retryable_exceptions=[ConnectionError],
            non_retryable_exceptions=[ConnectionResetError],
        )
        executor = RetryExecutor(config, sleep=AsyncMock())

        reset = AsyncMock(side_effect=ConnectionResetError("reset"))
        with pytest.raises(ConnectionResetError):
            await executor.async_execute(reset)
        assert reset.await_count == 1

        unlisted = AsyncMock(side_effect=OSError("disk"))
        with pytest.raises(OSError):
            await executor.async_execute(unlisted)
        assert unlisted.await_count == 1

    @pytest.mark.asyncio
    async def test_plain_functions_are_supported(self):
        executor = RetryExecutor(RetryConfig(), sleep=AsyncMock())
        assert await executor.async_execute(lambda value: value * 2, 21) == 42

    @pytest.mark.asyncio
    async def test_decorator(self):
        calls = []

        @retry(max_attempts=2, base_delay=0)
        async def once_flaky(value):
            calls.append(value)
            if len(calls) == 1:
                raise ConnectionError("blip")
            return value

        assert await once_flaky("x") == "x"
        assert calls == ["x", "x"]


class TestSettings:
    """Environment backed configuration."""

    def test_sync_defaults(self, monkeypatch):
        for name in ("SYNC_STRATEGY", "SYNC_BATCH_SIZE", "SYNC_CONFLICT_POLICY", "SYNC_LOCK_BACKEND"):
            monkeypatch.delenv(name, raising=False)

        sync = SyncSettings()

        assert sync.strategy == "batch"
        assert sync.batch_size == 50
        assert sync.conflict_policy == "source_wins"
        assert sync.lock_backend == "database"
        assert sync.max_resume_age_seconds == 3600

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("SYNC_STRATEGY", "queue")
        monkeypatch.setenv("SYNC_BATCH_SIZE", "200")
        monkeypatch.setenv("SYNC_STOP_ON_ERROR", "yes")
        monkeypatch.setenv("REDIS_KEY_PREFIX", "tenant-sync")

        config = Settings()

        assert config.sync.strategy == "queue"
        assert config.sync.batch_size == 200
        assert config.sync.stop_on_error is True
        assert config.redis.key_prefix == "tenant-sync"

    def test_malformed_numbers_fall_back(self, monkeypatch):
        monkeypatch.setenv("SYNC_BATCH_SIZE", "many")
        monkeypatch.setenv("SYNC_BACKOFF_BASE", "slow")
        assert get_env_int("SYNC_BATCH_SIZE", 50) == 50
        assert get_env_float("SYNC_BACKOFF_BASE", 1.0) == 1.0

    @pytest.mark.parametrize("value, expected", [
        ("true", True), ("1", True), ("ON", True), ("no", False), ("", False),
    ])
    def test_bool_parsing(self, monkeypatch, value, expected):
        monkeypatch.setenv("SYNC_FLAG", value)
        assert get_env_bool("SYNC_FLAG") is expected


class TestLogging:
    @pytest.fixture(autouse=True)
    def restore_logging(self):
        root = logging.getLogger()
        audit = logging.getLogger("audit")
        saved = (list(root.handlers), root.level, list(audit.handlers), audit.propagate)
        yield
        for handler in root.handlers + audit.handlers:
            if handler not in saved[0] + saved[2]:
                handler.close()
        root.handlers[:] = saved[0]
        root.setLevel(saved[1])
        audit.handlers[:] = saved[2]
        audit.propagate = saved[3]

    def test_log_files_are_created(self, tmp_path):
        setup_logging(log_dir=str(tmp_path), log_level="debug")

        logging.getLogger("dirsync.test").error("something broke")
        log_sync_event("task.completed", tenant="t1.p1", task_id="task-1", data={"operations": 3})
        for handler in logging.getLogger().handlers + logging.getLogger("audit").handlers:
            handler.flush()

        assert logging.getLogger().level == logging.DEBUG
        assert "something broke" in (tmp_path / "errors.log").read_text()
        audit_line = (tmp_path / "audit.log").read_text()
        assert "task.completed - t1.p1 - task-1" in audit_line
        assert '{"operations": 3}' in audit_line
        assert "task.completed" not in (tmp_path / "app.log").read_text()

    def test_audit_event_without_log_dir(self, caplog):
        with caplog.at_level(logging.INFO, logger="audit"):
            log_sync_event("task.failed", tenant="t1.p1", task_id="task-9", level=logging.WARNING)

        record = caplog.records[-1]
        assert record.name == "audit"
        assert record.levelno == logging.WARNING
        assert record.task_id == "task-9"
        assert record.getMessage() == "{}"
