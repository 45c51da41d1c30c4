# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_coderunner

from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

from coreason_coderunner.models import ImageSpec, ResourceLimits
from coreason_coderunner.utils.output import BoundedBuffer


@dataclass(frozen=True)
class ManagedContainer:
    container_id: str
    labels: Mapping[str, str] = field(default_factory=dict)


class ContainerRuntime(ABC):
    """
    Abstract base class for container runtimes.
    Follows the Strategy Pattern so the pool never talks to Docker directly.
    """

    @abstractmethod
    async def create(self, spec: ImageSpec, limits: ResourceLimits, labels: Mapping[str, str]) -> str:
        """Start a fresh, network-less container from ``spec.image``.

        The container is kept alive by an idle process so that commands can be
        injected afterwards.

        Args:
            spec: Image and user/working directory to run with.
            limits: Memory, CPU and process ceilings for the container.
            labels: Labels identifying the container as managed by this process.

        Returns:
            str: The container id.

        Raises:
            docker.errors.DockerException: If the container cannot be started.
        """
        pass  # pragma: no cover

    @abstractmethod
    async def put_file(
        self, container_id: str, directory: str, filename: str, data: bytes, uid: int, gid: int
    ) -> None:
        """Write a file into the container, owned by the given uid/gid."""
        pass  # pragma: no cover

    @abstractmethod
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
        """Run a command inside the container and wait for it to finish.

        Output is written into the caller's buffers as it arrives, so whatever
        was captured is still available if the caller stops waiting.

        Args:
            container_id: Target container.
            command: argv to run. Never interpreted by a shell.
            user: ``uid:gid`` to run as.
            workdir: Working directory inside the container.
            stdout: Buffer receiving standard output.
            stderr: Buffer receiving standard error.
            stdin_path: Path inside the container redirected to the command's stdin.

        Returns:
            int | None: The exit code, or None if the process never reported one
            (the container was torn down underneath it).
        """
        pass  # pragma: no cover

    @abstractmethod
    async def destroy(self, container_id: str) -> None:
        """Force-kill and remove a container.

        A container that no longer exists is not an error.
        """
        pass  # pragma: no cover

    @abstractmethod
    async def list_managed(self, label: str) -> list[ManagedContainer]:
        """List every container (running or not) carrying the given label key."""
        pass  # pragma: no cover
