# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_coderunner

from concurrent.futures import ThreadPoolExecutor
from typing import Any
from unittest.mock import patch

import pytest

from coreason_coderunner.config import CodeRunnerConfig
from coreason_coderunner.exceptions import InvalidSubmission, UnsupportedLanguage
from coreason_coderunner.models import ExecutionStatus
from coreason_coderunner.runtimes.docker import DockerRuntime
from coreason_coderunner.service import CodeRunner, CodeRunnerAsync, parse_submission

from .conftest import BROKEN_C, HELLO_C, FakeRuntime


def test_parse_submission_fills_defaults(config: CodeRunnerConfig) -> None:
    submission = parse_submission({"languageId": "c", "source": "int main(void) { return 0; }"}, config)

    assert submission.timeout_ms == config.default_timeout_ms
    assert submission.memory_limit_mb == config.default_memory_limit_mb
    assert submission.cpu_shares == config.default_cpu_shares
    assert submission.stdin is None


def test_parse_submission_keeps_explicit_values(config: CodeRunnerConfig) -> None:
    submission = parse_submission(
        {"languageId": "cpp", "source": "int main() {}", "timeoutMs": 250, "memoryLimitMb": 32, "cpuShares": 64},
        config,
    )

    assert submission.timeout_ms == 250
    assert submission.memory_limit_mb == 32
    assert submission.cpu_shares == 64


@pytest.mark.parametrize(
    "payload",
    [
        {"source": "int main() {}"},
        {"languageId": "c", "source": "x", "timeoutMs": -5},
        {"languageId": "c", "source": "x", "cpuShares": "lots"},
    ],
)
def test_parse_submission_rejects_bad_payloads(config: CodeRunnerConfig, payload: dict[str, Any]) -> None:
    with pytest.raises(InvalidSubmission):
        parse_submission(payload, config)


def test_docker_runtime_is_the_default(config: CodeRunnerConfig) -> None:
    with patch("coreason_coderunner.runtimes.docker.docker.from_env"):
        runner = CodeRunnerAsync(config)
    assert isinstance(runner.runtime, DockerRuntime)


def test_image_overrides_reach_the_catalog(fake_runtime: FakeRuntime) -> None:
    config = CodeRunnerConfig(image_overrides={"c": "registry.local/c:13"}, _env_file=None)
    runner = CodeRunnerAsync(config, fake_runtime)
    assert runner.catalog.resolve("c").image == "registry.local/c:13"


def test_reaper_lifetime_covers_longest_submission(config: CodeRunnerConfig, fake_runtime: FakeRuntime) -> None:
    runner = CodeRunnerAsync(config, fake_runtime)
    expected = config.compile_timeout + config.max_timeout_ms / 1000.0 + config.kill_grace
    assert runner.reaper.max_lifetime == pytest.approx(expected)


@pytest.mark.asyncio
async def test_async_service_lifecycle(config: CodeRunnerConfig, fake_runtime: FakeRuntime) -> None:
    async with CodeRunnerAsync(config, fake_runtime) as runner:
        assert runner.reaper.running

        result = await runner.submit({"languageId": "c", "source": HELLO_C.decode()})
        assert result.status is ExecutionStatus.COMPLETED
        assert result.stdout == b"Hello, World!\n"

        health = runner.health()
        assert health["status"] == "ok"
        assert health["pool_size"] == 2
        assert health["in_use"] == 0
        assert health["peak_in_use"] == 1
        assert health["reaper_running"] is True
        assert health["languages"] == ["c", "cpp", "java", "python"]

    assert not runner.reaper.running
    assert fake_runtime.live == 0


@pytest.mark.asyncio
async def test_async_service_accepts_submission_objects(
    config: CodeRunnerConfig, fake_runtime: FakeRuntime, make_submission: Any
) -> None:
    async with CodeRunnerAsync(config, fake_runtime) as runner:
        result = await runner.submit(make_submission("c", BROKEN_C))

    assert result.status is ExecutionStatus.COMPILE_FAILED


@pytest.mark.asyncio
async def test_async_service_admission_errors(config: CodeRunnerConfig, fake_runtime: FakeRuntime) -> None:
    async with CodeRunnerAsync(config, fake_runtime) as runner:
        with pytest.raises(UnsupportedLanguage):
            await runner.submit({"languageId": "fortran", "source": "end"})
        with pytest.raises(InvalidSubmission):
            await runner.submit({"languageId": "c"})

    assert fake_runtime.created == []


@pytest.mark.asyncio
async def test_exit_destroys_leftover_sandboxes(config: CodeRunnerConfig, fake_runtime: FakeRuntime) -> None:
    async with CodeRunnerAsync(config, fake_runtime) as runner:
        await runner.pool.acquire(runner.catalog.resolve("c"))
        assert fake_runtime.live == 1

    assert fake_runtime.live == 0


def test_sync_facade_submit(config: CodeRunnerConfig, fake_runtime: FakeRuntime) -> None:
    with CodeRunner(config, fake_runtime) as runner:
        result = runner.submit({"languageId": "c", "source": HELLO_C.decode()})
        assert result.status is ExecutionStatus.COMPLETED
        assert result.exit_code == 0
        assert runner.languages() == ["c", "cpp", "java", "python"]
        assert runner.health()["reaper_running"] is True

    assert runner.health()["reaper_running"] is False
    assert fake_runtime.live == 0


def test_sync_facade_from_several_threads(config: CodeRunnerConfig, fake_runtime: FakeRuntime) -> None:
    payload = {"languageId": "c", "source": HELLO_C.decode()}

    with CodeRunner(config, fake_runtime) as runner:
        with ThreadPoolExecutor(max_workers=4) as executor:
            results = list(executor.map(lambda _: runner.submit(payload), range(6)))

    assert all(r.status is ExecutionStatus.COMPLETED for r in results)
    assert fake_runtime.peak_live <= config.pool_size
    assert len(fake_runtime.created) == 6


def test_sync_facade_requires_context(config: CodeRunnerConfig, fake_runtime: FakeRuntime) -> None:
    runner = CodeRunner(config, fake_runtime)
    with pytest.raises(RuntimeError, match="not started"):
        runner.submit({"languageId": "c", "source": "int main() {}"})


def test_sync_facade_propagates_admission_errors(config: CodeRunnerConfig, fake_runtime: FakeRuntime) -> None:
    with CodeRunner(config, fake_runtime) as runner:
        with pytest.raises(UnsupportedLanguage):
            runner.submit({"languageId": "brainfuck", "source": "+"})


def test_sync_facade_failed_start_shuts_portal_down(config: CodeRunnerConfig, fake_runtime: FakeRuntime) -> None:
    runner = CodeRunner(config, fake_runtime)

    with patch("coreason_coderunner.service.configure_logging", side_effect=OSError("read-only file system")):
        with pytest.raises(OSError, match="read-only"):
            with runner:
                pass  # pragma: no cover

    assert runner._portal is None
    assert runner._portal_cm is None
    with pytest.raises(RuntimeError, match="not started"):
        runner.submit({"languageId": "c", "source": "int main() {}"})
