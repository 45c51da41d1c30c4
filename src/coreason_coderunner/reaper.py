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

from docker.errors import DockerException
from loguru import logger

from coreason_coderunner.pool import HandleState, SandboxPool
from coreason_coderunner.runtime import ManagedContainer


class Reaper:
    """Background sweeper for overdue and leaked sandboxes.

    Every ``interval`` seconds it:

    * releases in-process handles that ran past their deadline plus ``grace``,
      or that were acquired but never claimed within ``grace``;
    * destroys labeled containers that no live handle owns. Containers started
      by another pool instance (a previous process, or a sibling process on
      the same host) are only destroyed once they are older than
      ``max_lifetime`` plus ``grace``.

    Destruction goes through the pool and is keyed by container id, so it is
    safe to run alongside normal acquire/release traffic.
    """

    def __init__(self, pool: SandboxPool, interval: float, grace: float, max_lifetime: float):
        self.pool = pool
        self.interval = interval
        self.grace = grace
        self.max_lifetime = max_lifetime
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the background task if it is not already running."""
        if not self.running:
            self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None

    async def _loop(self) -> None:
        logger.info("Sandbox reaper started")
        try:
            while True:
                await asyncio.sleep(self.interval)
                try:
                    await self.sweep()
                except Exception as e:
                    logger.error(f"Sandbox reaper sweep failed: {e}")
        except asyncio.CancelledError:
            logger.info("Sandbox reaper cancelled")

    async def sweep(self) -> int:
        """Run one reaping pass.

        Returns:
            int: Number of sandboxes released or containers destroyed.
        """
        reaped = await self._reap_overdue_handles()

        try:
            containers = await self.pool.runtime.list_managed(self.pool.label)
        except DockerException as e:
            logger.warning(f"Listing managed containers failed: {e}")
            return reaped

        for container in containers:
            if self._is_orphan(container):
                logger.info(f"Container {container.container_id[:12]} is orphaned. Destroying.")
                await self.pool.destroy_container(container.container_id)
                reaped += 1
        return reaped

    async def _reap_overdue_handles(self) -> int:
        now = time.monotonic()
        reaped = 0
        for handle in self.pool.live_handles():
            if handle.state is HandleState.IN_USE and handle.deadline is not None:
                overdue = now > handle.deadline + self.grace
            elif handle.state is HandleState.READY:
                overdue = now - handle.created_at > self.grace
            else:
                continue
            if overdue:
                logger.warning(f"Sandbox {handle.handle_id} is overdue ({handle.state.value}). Releasing.")
                await self.pool.release(handle)
                reaped += 1
        return reaped

    def _is_orphan(self, container: ManagedContainer) -> bool:
        handle = self.pool.handle_for_container(container.container_id)
        if handle is not None:
            # Live, or already being released by its owner.
            return False

        labels = container.labels
        if labels.get(f"{self.pool.label}.instance") == self.pool.instance_id:
            handle_id = labels.get(f"{self.pool.label}.handle")
            pending = [h for h in self.pool.live_handles() if h.handle_id == handle_id]
            # Still being created: the container id is not on the handle yet.
            return not pending

        try:
            created = float(labels.get(f"{self.pool.label}.created", "0"))
        except ValueError:
            created = 0.0
        return time.time() - created > self.max_lifetime + self.grace
