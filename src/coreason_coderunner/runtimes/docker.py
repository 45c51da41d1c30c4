import asyncio
import io
import tarfile
import time
from collections.abc import Mapping, Sequence

import docker
from docker.errors import DockerException, NotFound
from loguru import logger

from coreason_coderunner.models import ImageSpec, ResourceLimits
from coreason_coderunner.runtime import ContainerRuntime, ManagedContainer
from coreason_coderunner.utils.output import BoundedBuffer

# Redirects stdin from a file, then replaces the shell with the real command.
# The file and argv are passed positionally so nothing is parsed by the shell.
STDIN_WRAPPER = ("sh", "-c", 'f="$1"; shift; exec "$@" < "$f"', "sh")
KEEPALIVE_COMMAND = ["tail", "-f", "/dev/null"]


class DockerRuntime(ContainerRuntime):
    """
    Docker-based implementation of the ContainerRuntime.
    """

    def __init__(self, client: docker.DockerClient | None = None):
        self._client = client

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    async def create(self, spec: ImageSpec, limits: ResourceLimits, labels: Mapping[str, str]) -> str:
        """
        Boot a container for one submission.
        """
        logger.info(f"Starting sandbox container from image {spec.image}")
        return await asyncio.to_thread(self._create_blocking, spec, limits, labels)

    def _create_blocking(self, spec: ImageSpec, limits: ResourceLimits, labels: Mapping[str, str]) -> str:
        memory = f"{limits.memory_limit_mb}m"
        try:
            container = self.client.containers.run(
                spec.image,
                command=KEEPALIVE_COMMAND,
                detach=True,
                network_mode="none",
                mem_limit=memory,
                memswap_limit=memory,
                cpu_shares=limits.cpu_shares,
                pids_limit=limits.pids_limit,
                cap_drop=["ALL"],
                security_opt=["no-new-privileges"],
                user=spec.user,
                working_dir=spec.working_dir,
                labels=dict(labels),
                init=True,
            )
        except DockerException as e:
            logger.error(f"Failed to start sandbox container from {spec.image}: {e}")
            raise

        logger.info(f"Sandbox container started: {container.short_id}")
        return container.id

    async def put_file(
        self, container_id: str, directory: str, filename: str, data: bytes, uid: int, gid: int
    ) -> None:
        """
        Inject a file into the container.
        """
        await asyncio.to_thread(self._put_file_blocking, container_id, directory, filename, data, uid, gid)

    def _put_file_blocking(
        self, container_id: str, directory: str, filename: str, data: bytes, uid: int, gid: int
    ) -> None:
        info = tarfile.TarInfo(name=filename)
        info.size = len(data)
        info.mode = 0o644
        info.uid = uid
        info.gid = gid
        info.mtime = int(time.time())

        tar_stream = io.BytesIO()
        with tarfile.open(fileobj=tar_stream, mode="w") as tar:
            tar.addfile(info, io.BytesIO(data))
        tar_stream.seek(0)

        logger.debug(f"Uploading {filename} ({len(data)} bytes) to {directory} in {container_id[:12]}")
        if not self.client.api.put_archive(container_id, directory, tar_stream.getvalue()):
            raise DockerException(f"Upload of {filename} to {directory} was rejected")

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
        """
        Run a command and capture its output.
        """
        cmd = list(command)
        if stdin_path is not None:
            cmd = [*STDIN_WRAPPER, stdin_path, *cmd]
        return await asyncio.to_thread(self._exec_blocking, container_id, cmd, user, workdir, stdout, stderr)

    def _exec_blocking(
        self,
        container_id: str,
        cmd: list[str],
        user: str,
        workdir: str,
        stdout: BoundedBuffer,
        stderr: BoundedBuffer,
    ) -> int | None:
        api = self.client.api
        exec_id = api.exec_create(
            container_id,
            cmd,
            stdout=True,
            stderr=True,
            stdin=False,
            tty=False,
            user=user,
            workdir=workdir,
        )["Id"]

        # Keep draining past the cap so the process never blocks on a full pipe.
        for out_chunk, err_chunk in api.exec_start(exec_id, stream=True, demux=True):
            stdout.write(out_chunk)
            stderr.write(err_chunk)

        try:
            return api.exec_inspect(exec_id).get("ExitCode")
        except NotFound:
            return None

    async def destroy(self, container_id: str) -> None:
        """
        Kill and remove the container.
        """
        await asyncio.to_thread(self._destroy_blocking, container_id)

    def _destroy_blocking(self, container_id: str) -> None:
        try:
            container = self.client.containers.get(container_id)
        except NotFound:
            logger.debug(f"Sandbox container {container_id[:12]} already gone")
            return

        logger.info(f"Terminating sandbox container: {container.short_id}")
        try:
            container.remove(force=True)
        except NotFound:
            logger.debug(f"Sandbox container {container.short_id} removed concurrently")

    async def list_managed(self, label: str) -> list[ManagedContainer]:
        containers = await asyncio.to_thread(
            self.client.containers.list, all=True, filters={"label": label}
        )
        return [ManagedContainer(container_id=c.id, labels=dict(c.labels or {})) for c in containers]
