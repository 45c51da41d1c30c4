import asyncio
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Callable

import pytest
from docker.errors import DockerException

from coreason_coderunner.config import CodeRunnerConfig
from coreason_coderunner.models import ImageSpec, ResourceLimits, Submission
from coreason_coderunner.runtime import ContainerRuntime, ManagedContainer
from coreason_coderunner.utils.output import BoundedBuffer

HELLO_C = b'#include <stdio.h>\n\nint main(void) {\n    printf("Hello, World!\\n");\n    return 0;\n}\n'
BROKEN_C = b"int main( {\n    return 0\n}\n"
LOOP_CPP = b"int main() {\n    while (true) {}\n    return 0;\n}\n"


@dataclass
class FakeContainer:
    container_id: str
    spec: ImageSpec
    limits: ResourceLimits
    labels: dict[str, str]
    files: dict[str, bytes] = field(default_factory=dict)
    gone: asyncio.Event = field(default_factory=asyncio.Event)


def _balanced(source: bytes) -> bool:
    return source.count(b"{") == source.count(b"}") and source.count(b"(") == source.count(b")")


def simulated_toolchain(container: FakeContainer, command: Sequence[str]) -> tuple[int, bytes, bytes] | None:
    """Very small stand-in for gcc/g++/javac and the programs they build.

    * compilers fail on unbalanced braces/parentheses;
    * programs echo their first string literal, read stdin with ``scanf``/``cin``,
      hang forever on ``while (true)``/``for (;;)`` and exit with ``return N``.

    Returning None means "never finish".
    """
    source = next((data for name, data in container.files.items() if not name.startswith(".")), b"")
    tool = command[0]
    if tool in ("gcc", "g++", "javac"):
        if _balanced(source):
            container.files["program"] = source
            return 0, b"", b""
        name = command[1]
        return 1, b"", f"{name}:1:10: error: expected declaration specifiers before '{{' token\n".encode()

    if b"while (true)" in source or b"for (;;)" in source:
        return None
    stdout = b""
    literal = re.search(rb'"((?:[^"\\]|\\.)*)"', source)
    if literal:
        stdout = literal.group(1).replace(b"\\n", b"\n")
    stdin = container.files.get(".stdin")
    if stdin is not None and (b"scanf" in source or b"cin" in source):
        stdout += stdin
    code = re.search(rb"return (\d+);", source)
    return (int(code.group(1)) if code else 0), stdout, b""


class FakeRuntime(ContainerRuntime):
    """In-memory ContainerRuntime that records everything the pool asks of it."""

    def __init__(
        self,
        toolchain: Callable[[FakeContainer, Sequence[str]], tuple[int, bytes, bytes] | None] = simulated_toolchain,
        create_delay: float = 0.0,
        exec_delay: float = 0.0,
    ):
        self.toolchain = toolchain
        self.create_delay = create_delay
        self.exec_delay = exec_delay
        self.create_error: Exception | None = None
        self.destroy_error: Exception | None = None
        self.containers: dict[str, FakeContainer] = {}
        self.foreign: list[ManagedContainer] = []
        self.created: list[str] = []
        self.destroyed: list[str] = []
        self.exec_log: list[tuple[str, ...]] = []
        self.peak_live = 0
        self._counter = 0

    @property
    def live(self) -> int:
        return len(self.containers)

    async def create(self, spec: ImageSpec, limits: ResourceLimits, labels: Mapping[str, str]) -> str:
        if self.create_delay:
            await asyncio.sleep(self.create_delay)
        if self.create_error is not None:
            raise self.create_error
        self._counter += 1
        container_id = f"{self._counter:064x}"
        self.containers[container_id] = FakeContainer(container_id, spec, limits, dict(labels))
        self.created.append(container_id)
        self.peak_live = max(self.peak_live, self.live)
        return container_id

    async def put_file(
        self, container_id: str, directory: str, filename: str, data: bytes, uid: int, gid: int
    ) -> None:
        container = self.containers.get(container_id)
        if container is None:
            raise DockerException(f"No such container: {container_id}")
        container.files[filename] = data

    async def exec(
        self,
        container_id: str,
        command: Sequence[str],
        *,
        user: str,
        workdir: str,
        stdout: BoundedBuffer,
        stderr: BoundedBuffer,
        stdin_path: str | None = None,
    ) -> int | None:
        container = self.containers.get(container_id)
        if container is None:
            raise DockerException(f"No such container: {container_id}")
        self.exec_log.append(tuple(command))
        if self.exec_delay:
            await asyncio.sleep(self.exec_delay)
        outcome = self.toolchain(container, command)
        if outcome is None:
            await container.gone.wait()
            return None
        exit_code, out, err = outcome
        stdout.write(out)
        stderr.write(err)
        return exit_code

    async def destroy(self, container_id: str) -> None:
        if self.destroy_error is not None:
            raise self.destroy_error
        self.destroyed.append(container_id)
        container = self.containers.pop(container_id, None)
        if container is not None:
            container.gone.set()
        self.foreign = [c for c in self.foreign if c.container_id != container_id]

    async def list_managed(self, label: str) -> list[ManagedContainer]:
        own = [ManagedContainer(c.container_id, dict(c.labels)) for c in self.containers.values()]
        return own + list(self.foreign)


@pytest.fixture
def fake_runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def config() -> CodeRunnerConfig:
    return CodeRunnerConfig(
        pool_size=2,
        acquire_timeout=5.0,
        compile_timeout=2.0,
        kill_grace=0.5,
        reaper_interval=0.05,
        reaper_grace=0.1,
        enable_audit_logging=False,
        _env_file=None,
    )


@pytest.fixture
def make_submission() -> Callable[..., Submission]:
    def _make(language_id: str = "c", source: bytes = HELLO_C, **overrides: Any) -> Submission:
        values: dict[str, Any] = {
            "language_id": language_id,
            "source": source,
            "timeout_ms": 1000,
            "memory_limit_mb": 128,
            "cpu_shares": 512,
        }
        values.update(overrides)
        return Submission(**values)

    return _make
