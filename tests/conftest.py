"""Shared fixtures: a fake AWS account, a RunContext bound to it, and settings."""

from __future__ import annotations

import pytest

from config import Settings
from fakes import ACCOUNT_ID, FakeAWS, FakeSession
from models import RunContext


@pytest.fixture
def aws() -> FakeAWS:
    """Empty in-memory account."""
    return FakeAWS()


@pytest.fixture
def ctx(aws, tmp_path) -> RunContext:
    """RunContext for us-east-1 writing local files under tmp_path."""
    return RunContext(
        region="us-east-1",
        suffix="abc12345",
        prefix="laravel",
        session=FakeSession(aws),
        account_id=ACCOUNT_ID,
        workdir=tmp_path,
    )


@pytest.fixture
def settings() -> Settings:
    """Default settings without the IAM propagation pause."""
    s = Settings()
    s.owner = "tester"
    s.iam_propagation_seconds = 0
    s.waiter_delay = 1
    s.waiter_max_attempts = 2
    return s
