# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_coderunner

import re
from enum import StrEnum
from pathlib import PurePosixPath
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class ExecutionStatus(StrEnum):
    COMPLETED = "completed"
    TIMED_OUT = "timed-out"
    KILLED = "killed"
    COMPILE_FAILED = "compile-failed"
    INTERNAL_ERROR = "internal-error"


_STATUSES_WITH_EXIT_CODE = {ExecutionStatus.COMPLETED, ExecutionStatus.KILLED}


class ResourceLimits(BaseModel):
    """Per-container resource ceilings.

    Attributes:
        memory_limit_mb: Memory ceiling in megabytes. Swap is pinned to the same value.
        cpu_shares: Relative CPU weight (1024 is one full share).
        pids_limit: Maximum number of processes inside the container.
    """

    model_config = ConfigDict(frozen=True)

    memory_limit_mb: int = Field(gt=0)
    cpu_shares: int = Field(ge=2)
    pids_limit: int = Field(default=64, gt=0)

    def clamp(self, ceiling: "ResourceLimits") -> "ResourceLimits":
        """Return limits that never exceed the given hard ceiling."""
        return ResourceLimits(
            memory_limit_mb=min(self.memory_limit_mb, ceiling.memory_limit_mb),
            cpu_shares=min(self.cpu_shares, ceiling.cpu_shares),
            pids_limit=min(self.pids_limit, ceiling.pids_limit),
        )


class Submission(BaseModel):
    """One request to compile and run untrusted source.

    Accepts both the Python field names and the camelCase wire names
    (``languageId``, ``timeoutMs``, ...). Immutable once constructed.

    Attributes:
        language_id: Catalog key of the language, e.g. ``c`` or ``cpp``.
        source: Source text as bytes.
        stdin: Optional bytes fed to the program's standard input.
        timeout_ms: Wall-clock budget for the run step.
        memory_limit_mb: Memory ceiling for the sandbox.
        cpu_shares: CPU weight for the sandbox.
    """

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    language_id: str = Field(min_length=1)
    source: bytes
    stdin: bytes | None = None
    timeout_ms: int = Field(gt=0)
    memory_limit_mb: int = Field(gt=0)
    cpu_shares: int = Field(ge=2)

    @property
    def timeout(self) -> float:
        """Run-step timeout in seconds."""
        return self.timeout_ms / 1000.0

    @property
    def limits(self) -> ResourceLimits:
        return ResourceLimits(memory_limit_mb=self.memory_limit_mb, cpu_shares=self.cpu_shares)


class ExecutionResult(BaseModel):
    """Outcome of exactly one submission.

    Attributes:
        status: How the submission ended.
        stdout: Captured standard output, capped in size.
        stderr: Captured standard error, capped in size.
        exit_code: Exit code of the program for ``completed`` and ``killed`` results.
        elapsed_ms: Wall-clock time spent in the sandbox, compile included.
        truncated: True if either stream hit the capture cap.
    """

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    status: ExecutionStatus
    stdout: bytes = b""
    stderr: bytes = b""
    exit_code: int | None = None
    elapsed_ms: int = Field(default=0, ge=0)
    truncated: bool = False

    @model_validator(mode="after")
    def _exit_code_matches_status(self) -> "ExecutionResult":
        if self.exit_code is not None and self.status not in _STATUSES_WITH_EXIT_CODE:
            raise ValueError(f"exit_code is not applicable to status {self.status.value}")
        if self.exit_code is None and self.status == ExecutionStatus.COMPLETED:
            raise ValueError("completed results must carry an exit_code")
        return self

    @property
    def stdout_text(self) -> str:
        return self.stdout.decode("utf-8", errors="replace")

    @property
    def stderr_text(self) -> str:
        return self.stderr.decode("utf-8", errors="replace")

    def to_response(self) -> dict[str, Any]:
        """Render the result in the external camelCase shape."""
        data = self.model_dump(by_alias=True)
        data["status"] = self.status.value
        return data


class PreparedProgram(BaseModel):
    """Concrete file name and argv lists for one submission."""

    model_config = ConfigDict(frozen=True)

    source_file: str
    compile_command: tuple[str, ...] | None
    run_command: tuple[str, ...]


class ImageSpec(BaseModel):
    """How to compile and run one language inside its pre-built image.

    Command templates may reference ``{source}`` (the source file name) and
    ``{main}`` (the entry point, i.e. the source file name without suffix).
    When ``entry_point_pattern`` is set, the entry point is read from the
    source text and the source file is named after it (Java's public class).

    Attributes:
        language_id: Catalog key.
        image: Image reference to instantiate.
        source_file: Default file name the source is written to.
        compile_command: Compile argv template, or None if the language has no compile step.
        run_command: Run argv template.
        working_dir: Directory the source is written to and commands run in.
        user: Non-root ``uid:gid`` the image was built with.
        stderr_noise: Line prefixes dropped from captured stderr.
        entry_point_pattern: Regex with one group capturing the entry point name.
    """

    model_config = ConfigDict(frozen=True)

    language_id: str
    image: str
    source_file: str
    compile_command: tuple[str, ...] | None = None
    run_command: tuple[str, ...]
    working_dir: str = "/app"
    user: str = "1000:1000"
    stderr_noise: tuple[str, ...] = ()
    entry_point_pattern: str | None = None

    @property
    def uid(self) -> int:
        return int(self.user.split(":", 1)[0])

    @property
    def gid(self) -> int:
        parts = self.user.split(":", 1)
        return int(parts[1]) if len(parts) > 1 else self.uid

    def prepare(self, source: bytes) -> PreparedProgram:
        """Bind the command templates to a concrete source text.

        Raises:
            ValueError: If the language needs an entry point and the source has none.
        """
        source_file = self.source_file
        if self.entry_point_pattern:
            match = re.search(self.entry_point_pattern, source.decode("utf-8", errors="replace"))
            if not match:
                raise ValueError(f"{self.language_id} source must declare a public class")
            suffix = PurePosixPath(self.source_file).suffix
            source_file = f"{match.group(1)}{suffix}"

        fields = {"source": source_file, "main": PurePosixPath(source_file).stem}
        compile_command = None
        if self.compile_command:
            compile_command = tuple(part.format(**fields) for part in self.compile_command)
        return PreparedProgram(
            source_file=source_file,
            compile_command=compile_command,
            run_command=tuple(part.format(**fields) for part in self.run_command),
        )

    def strip_noise(self, stderr: bytes) -> bytes:
        """Drop runtime chatter (e.g. JVM banners) that is not a real diagnostic."""
        if not self.stderr_noise or not stderr:
            return stderr
        kept = [
            line
            for line in stderr.splitlines(keepends=True)
            if not any(line.lstrip().startswith(prefix.encode()) for prefix in self.stderr_noise)
        ]
        return b"".join(kept)
