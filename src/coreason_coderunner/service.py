# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_coderunner

from contextlib import AbstractContextManager
from typing import Any

from anyio.from_thread import BlockingPortal, start_blocking_portal
from loguru import logger

from coreason_coderunner.audit import SubmissionAuditor
from coreason_coderunner.catalog import ImageCatalog
from coreason_coderunner.config import CodeRunnerConfig
from coreason_coderunner.coordinator import ExecutionCoordinator
from coreason_coderunner.exceptions import InvalidSubmission
from coreason_coderunner.models import ExecutionResult, Submission
from coreason_coderunner.pool import SandboxPool
from coreason_coderunner.reaper import Reaper
from coreason_coderunner.runtime import ContainerRuntime
from coreason_coderunner.runtimes.docker import DockerRuntime
from coreason_coderunner.utils.logger import configure_logging


def parse_submission(payload: dict[str, Any], config: CodeRunnerConfig) -> Submission:
    """Build a Submission from the external intake shape.

    Missing ``timeoutMs``, ``memoryLimitMb`` and ``cpuShares`` fall back to the
    configured defaults. Text ``source``/``stdin`` are encoded as UTF-8.

    Raises:
        InvalidSubmission: If the payload does not validate.
    """
    data = {
        "timeoutMs": config.default_timeout_ms,
        "memoryLimitMb": config.default_memory_limit_mb,
        "cpuShares": config.default_cpu_shares,
        **payload,
    }
    try:
        return Submission.model_validate(data)
    except ValueError as e:
        raise InvalidSubmission(str(e)) from e


class CodeRunnerAsync:
    """Async-native code runner service (The Core).

    Owns the image catalog, the sandbox pool, the execution coordinator and
    the reaper. Use as an async context manager.
    """

    def __init__(
        self,
        config: CodeRunnerConfig | None = None,
        runtime: ContainerRuntime | None = None,
    ):
        """Initializes the CodeRunnerAsync service.

        Args:
            config: Configuration for the runner.
            runtime: Optional container runtime. Defaults to Docker.
        """
        self.config = config or CodeRunnerConfig()
        self.catalog = ImageCatalog(image_overrides=self.config.image_overrides)
        self.runtime = runtime or DockerRuntime()
        self.pool = SandboxPool(
            self.runtime,
            size=self.config.pool_size,
            hard_limits=self.config.hard_limits,
            label=self.config.docker_label,
            acquire_timeout=self.config.acquire_timeout,
            kill_grace=self.config.kill_grace,
        )
        self.coordinator = ExecutionCoordinator(
            self.catalog,
            self.pool,
            self.config,
            SubmissionAuditor(enabled=self.config.enable_audit_logging),
        )
        self.reaper = Reaper(
            self.pool,
            interval=self.config.reaper_interval,
            grace=self.config.reaper_grace,
            max_lifetime=self.config.compile_timeout
            + self.config.max_timeout_ms / 1000.0
            + self.config.kill_grace,
        )

    async def __aenter__(self) -> "CodeRunnerAsync":
        """Configures logging and starts the reaper."""
        configure_logging(self.config.log_level, self.config.log_file)
        self.reaper.start()
        logger.info(f"Code runner started: {self.pool.size} sandbox slots, languages {self.catalog.languages()}")
        return self

    async def __aexit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        """Stops the reaper and destroys every live sandbox."""
        await self.reaper.stop()
        await self.pool.close()

    async def submit(self, submission: Submission | dict[str, Any]) -> ExecutionResult:
        """Compiles and runs one submission.

        Args:
            submission: A Submission, or a dict in the external intake shape.

        Returns:
            ExecutionResult: The outcome of the submission.
        """
        if not isinstance(submission, Submission):
            submission = parse_submission(submission, self.config)
        return await self.coordinator.run(submission)

    def languages(self) -> list[str]:
        return self.catalog.languages()

    def health(self) -> dict[str, Any]:
        return {
            "status": "ok",
            "pool_size": self.pool.size,
            "in_use": self.pool.in_use,
            "peak_in_use": self.pool.peak_in_use,
            "reaper_running": self.reaper.running,
            "languages": self.languages(),
        }


class CodeRunner:
    """Sync Facade for CodeRunnerAsync (The Facade).

    Runs CodeRunnerAsync on an anyio blocking portal, so the pool and the
    reaper live on one event loop for the whole lifetime of the context.
    Safe to call ``submit`` from several threads at once.
    """

    def __init__(
        self,
        config: CodeRunnerConfig | None = None,
        runtime: ContainerRuntime | None = None,
    ):
        self._async = CodeRunnerAsync(config, runtime)
        self._portal_cm: AbstractContextManager[BlockingPortal] | None = None
        self._portal: BlockingPortal | None = None

    def __enter__(self) -> "CodeRunner":
        """Context entry point."""
        self._portal_cm = start_blocking_portal()
        self._portal = self._portal_cm.__enter__()
        try:
            self._portal.call(self._async.__aenter__)
        except BaseException:
            self._portal_cm.__exit__(None, None, None)
            self._portal = None
            self._portal_cm = None
            raise
        return self

    def __exit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        """Context exit point."""
        if self._portal is None or self._portal_cm is None:
            return
        try:
            self._portal.call(self._async.__aexit__, exc_type, exc_val, exc_tb)
        finally:
            self._portal_cm.__exit__(None, None, None)
            self._portal = None
            self._portal_cm = None

    def _require_portal(self) -> BlockingPortal:
        if self._portal is None:
            raise RuntimeError("CodeRunner is not started; use it as a context manager")
        return self._portal

    def submit(self, submission: Submission | dict[str, Any]) -> ExecutionResult:
        """Compiles and runs one submission synchronously."""
        return self._require_portal().call(self._async.submit, submission)

    def languages(self) -> list[str]:
        return self._async.languages()

    def health(self) -> dict[str, Any]:
        return self._async.health()
