from __future__ import annotations

import os
from typing import List

import pytest

from media_pipeline.config import Settings


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def temp_root(tmp_path) -> str:
    root = tmp_path / "projects"
    root.mkdir()
    return str(root)


@pytest.fixture
def settings(temp_root) -> Settings:
    return Settings(
        _env_file=None,
        temp_root=temp_root,
        media_roots=[temp_root],
        replicate_api_token="test-token",
        replicate_base_url="https://provider.test/v1",
        poll_interval_seconds=0,
        poll_max_attempts=5,
        retry_initial_delay_seconds=1,
        retry_max_delay_seconds=10,
        kafka_enabled=False,
        cron_secret="",
        cleanup_interval_seconds=0,
    )


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def no_sleep() -> RecordingSleep:
    return RecordingSleep()


class FakeFfmpeg:
    """Records ffmpeg argv and writes the output file instead of rendering."""

    def __init__(self, fail_when=None) -> None:
        self.calls: List[List[str]] = []
        self.fail_when = fail_when

    async def __call__(self, args) -> str:
        from media_pipeline.errors import ErrorCode, PipelineError

        argv = list(args)
        self.calls.append(argv)
        if self.fail_when is not None and self.fail_when(argv):
            raise PipelineError(ErrorCode.RENDER_FAILED, "ffmpeg exited with 1: simulated failure")
        output = argv[-1]
        os.makedirs(os.path.dirname(output), exist_ok=True)
        with open(output, "wb") as fh:
            fh.write(b"rendered")
        return ""


@pytest.fixture
def fake_ffmpeg() -> FakeFfmpeg:
    return FakeFfmpeg()
