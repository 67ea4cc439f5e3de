"""
Shared pytest fixtures for the eventchain test suite.

This module provides fixtures that are automatically available to all test files:
- Fast retry and confirmation settings so tests never sleep for long
- A dead-letter recorder writing to ``tmp_path``
- A fully populated, valid PipelineConfig pointing at a fake mirror node

Builders and fakes that tests import directly live in ``tests/helpers.py``.
"""

from pathlib import Path

import pytest

from eventchain.codec import MessageCodec
from eventchain.config import (
    ConfirmationSettings,
    DeadLetterSettings,
    LogSettings,
    PipelineConfig,
    RetrySettings,
)
from eventchain.deadletter import DeadLetterRecorder
from tests.helpers import MIRROR_URL, TOPIC_ID

# ============================================================================
# SETTINGS FIXTURES
# ============================================================================


@pytest.fixture
def fast_retry() -> RetrySettings:
    """Retry settings with millisecond delays."""
    return RetrySettings(max_retries=3, base_delay_ms=1, max_delay_ms=5, backoff_multiplier=2.0)


@pytest.fixture
def fast_confirmation() -> ConfirmationSettings:
    """Confirmation settings with short poll intervals."""
    return ConfirmationSettings(budget_ms=2000, initial_poll_interval_ms=20, max_poll_interval_ms=50)


@pytest.fixture
def log_settings() -> LogSettings:
    """Log settings pointing at the fake mirror node."""
    return LogSettings(
        topic_id=TOPIC_ID,
        operator_id="0.0.1001",
        operator_key="302e020100300506032b657004220420deadbeef",
        mirror_node_url=MIRROR_URL,
        message_timeout_ms=1000,
    )


@pytest.fixture
def codec() -> MessageCodec:
    """Codec with the default 1024-byte limit."""
    return MessageCodec()


# ============================================================================
# STORAGE FIXTURES
# ============================================================================


@pytest.fixture
def dead_letter_path(tmp_path: Path) -> Path:
    """Location of the dead-letter file for one test."""
    return tmp_path / "data" / "dead_letters.jsonl"


@pytest.fixture
def recorder(dead_letter_path: Path) -> DeadLetterRecorder:
    """Dead-letter recorder isolated in ``tmp_path``."""
    return DeadLetterRecorder(dead_letter_path)


@pytest.fixture
def pipeline_config(
    log_settings: LogSettings,
    fast_retry: RetrySettings,
    fast_confirmation: ConfirmationSettings,
    dead_letter_path: Path,
) -> PipelineConfig:
    """A valid configuration wired to the fixtures above."""
    return PipelineConfig(
        log=log_settings,
        retry=fast_retry,
        confirmation=fast_confirmation,
        dead_letter=DeadLetterSettings(path=str(dead_letter_path)),
    )
