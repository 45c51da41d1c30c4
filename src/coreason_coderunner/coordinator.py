# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_coderunner

import asyncio
import time
from collections.abc import Sequence
from uuid import uuid4

from loguru import logger

from coreason_coderunner.audit import SubmissionAuditor
from coreason_coderunner.catalog import ImageCatalog
from coreason_coderunner.config import CodeRunnerConfig
from coreason_coderunner.exceptions import InvalidSubmission
from coreason_coderunner.models import ExecutionResult, ExecutionStatus, ImageSpec, PreparedProgram, Submission
from coreason_coderunner.pool import SandboxHandle, SandboxPool
from coreason_coderunner.utils.output import BoundedBuffer

STDIN_FILE = ".stdin"
SIGKILL_EXIT_CODE = 137


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class ExecutionCoordinator:
    """Drives one submission through compile, run and capture inside one sandbox.

    ``run`` either raises an admission or infrastructure error before any user
    code runs, or returns exactly one ExecutionResult. The sandbox is released
    on every path, cancellation included.
    """

    def __init__(
        self,
        catalog: ImageCatalog,
        pool: SandboxPool,
        config: CodeRunnerConfig | None = None,
        auditor: SubmissionAuditor | None = None,
    ):
        self.catalog = catalog
        self.pool = pool
        self.config = config or CodeRunnerConfig()
        self.auditor = auditor or SubmissionAuditor(enabled=self.config.enable_audit_logging)

    async def run(self, submission: Submission, acquire_timeout: float | None = None) -> ExecutionResult:
        """Run a submission to completion.

        Args:
            submission: What to compile and run.
            acquire_timeout: Override for how long to wait for a sandbox slot.

        Returns:
            ExecutionResult: The single outcome of the submission.

        Raises:
            UnsupportedLanguage: If the catalog has no image for the language.
            InvalidSubmission: If the submission asks for more time than allowed.
            PoolExhausted: If no sandbox slot frees up in time.
            SandboxCreationFailed: If the container could not be started.
        """
        spec = self.catalog.resolve(submission.language_id)
        if submission.timeout_ms > self.config.max_timeout_ms:
            raise InvalidSubmission(
                f"timeout_ms {submission.timeout_ms} exceeds the maximum of {self.config.max_timeout_ms}"
            )

        submission_id = uuid4().hex[:12]
        self.auditor.log_submission(submission_id, submission.language_id, submission.source)

        try:
            program = spec.prepare(submission.source)
        except ValueError as e:
            result = ExecutionResult(status=ExecutionStatus.COMPILE_FAILED, stderr=str(e).encode())
            self.auditor.log_outcome(submission_id, result.status.value, result.elapsed_ms)
            return result

        handle = await self.pool.acquire(spec, submission.limits, timeout=acquire_timeout)
        started = time.monotonic()
        try:
            result = await self._execute(handle, spec, program, submission)
        except Exception as e:
            logger.exception(f"Submission {submission_id} failed inside sandbox {handle.handle_id}: {e}")
            result = ExecutionResult(
                status=ExecutionStatus.INTERNAL_ERROR,
                stderr=f"Internal error: {e}".encode(),
                elapsed_ms=_elapsed_ms(started),
            )
        finally:
            await asyncio.shield(self.pool.release(handle))

        self.auditor.log_outcome(submission_id, result.status.value, result.elapsed_ms)
        return result

    async def _execute(
        self,
        handle: SandboxHandle,
        spec: ImageSpec,
        program: PreparedProgram,
        submission: Submission,
    ) -> ExecutionResult:
        if handle.container_id is None or not handle.usable:
            raise RuntimeError(f"Sandbox {handle.handle_id} is not usable ({handle.state.value})")

        budget = self.config.compile_timeout + submission.timeout + self.config.kill_grace
        self.pool.claim(handle, budget)
        started = time.monotonic()

        runtime = self.pool.runtime
        await runtime.put_file(
            handle.container_id, spec.working_dir, program.source_file, submission.source, spec.uid, spec.gid
        )
        stdin_path = "/dev/null"
        if submission.stdin is not None:
            await runtime.put_file(
                handle.container_id, spec.working_dir, STDIN_FILE, submission.stdin, spec.uid, spec.gid
            )
            stdin_path = f"{spec.working_dir}/{STDIN_FILE}"

        if program.compile_command:
            compile_out = BoundedBuffer(self.config.output_limit_bytes)
            compile_err = BoundedBuffer(self.config.output_limit_bytes)
            try:
                exit_code = await asyncio.wait_for(
                    self._exec(handle, spec, program.compile_command, compile_out, compile_err, None),
                    timeout=self.config.compile_timeout,
                )
            except asyncio.TimeoutError:
                logger.warning(f"Compilation in sandbox {handle.handle_id} exceeded {self.config.compile_timeout}s")
                await self.pool.release(handle)
                return ExecutionResult(
                    status=ExecutionStatus.COMPILE_FAILED,
                    stdout=compile_out.getvalue(),
                    stderr=f"Compilation exceeded {self.config.compile_timeout:g} seconds limit.".encode(),
                    elapsed_ms=_elapsed_ms(started),
                    truncated=compile_out.truncated,
                )

            if exit_code is None:
                # Sandbox torn down under the compiler: not the submission's fault.
                logger.warning(f"Compiler in sandbox {handle.handle_id} was killed")
                return ExecutionResult(
                    status=ExecutionStatus.KILLED,
                    stdout=compile_out.getvalue(),
                    stderr=spec.strip_noise(compile_err.getvalue()),
                    elapsed_ms=_elapsed_ms(started),
                    truncated=compile_out.truncated or compile_err.truncated,
                )

            if exit_code != 0:
                return ExecutionResult(
                    status=ExecutionStatus.COMPILE_FAILED,
                    stdout=compile_out.getvalue(),
                    stderr=spec.strip_noise(compile_err.getvalue()),
                    elapsed_ms=_elapsed_ms(started),
                    truncated=compile_out.truncated or compile_err.truncated,
                )

        stdout = BoundedBuffer(self.config.output_limit_bytes)
        stderr = BoundedBuffer(self.config.output_limit_bytes)
        try:
            exit_code = await asyncio.wait_for(
                self._exec(handle, spec, program.run_command, stdout, stderr, stdin_path),
                timeout=submission.timeout,
            )
        except asyncio.TimeoutError:
            logger.info(f"Run in sandbox {handle.handle_id} exceeded {submission.timeout_ms}ms. Killing sandbox.")
            # Force-kill the process tree now; the final release becomes a no-op.
            await self.pool.release(handle)
            return ExecutionResult(
                status=ExecutionStatus.TIMED_OUT,
                stdout=stdout.getvalue(),
                stderr=spec.strip_noise(stderr.getvalue()),
                elapsed_ms=_elapsed_ms(started),
                truncated=stdout.truncated or stderr.truncated,
            )

        if exit_code is None or exit_code == SIGKILL_EXIT_CODE:
            status = ExecutionStatus.KILLED
        else:
            status = ExecutionStatus.COMPLETED

        return ExecutionResult(
            status=status,
            stdout=stdout.getvalue(),
            stderr=spec.strip_noise(stderr.getvalue()),
            exit_code=exit_code,
            elapsed_ms=_elapsed_ms(started),
            truncated=stdout.truncated or stderr.truncated,
        )

    async def _exec(
        self,
        handle: SandboxHandle,
        spec: ImageSpec,
        command: Sequence[str],
        stdout: BoundedBuffer,
        stderr: BoundedBuffer,
        stdin_path: str | None,
    ) -> int | None:
        if handle.container_id is None or not handle.usable:
            # Reaped between steps.
            return None
        return await self.pool.runtime.exec(
            handle.container_id,
            command,
            user=spec.user,
            workdir=spec.working_dir,
            stdout=stdout,
            stderr=stderr,
            stdin_path=stdin_path,
        )
