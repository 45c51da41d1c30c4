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
from dataclasses import dataclass, field
from enum import StrEnum
from uuid import uuid4

from loguru import logger

from coreason_coderunner.exceptions import PoolExhausted, SandboxCreationFailed, SandboxStateError
from coreason_coderunner.models import ImageSpec, ResourceLimits
from coreason_coderunner.runtime import ContainerRuntime


class HandleState(StrEnum):
    CREATING = "creating"
    READY = "ready"
    IN_USE = "in-use"
    TERMINATING = "terminating"
    DESTROYED = "destroyed"


_TRANSITIONS: dict[HandleState, frozenset[HandleState]] = {
    HandleState.CREATING: frozenset({HandleState.READY, HandleState.TERMINATING}),
    HandleState.READY: frozenset({HandleState.IN_USE, HandleState.TERMINATING}),
    HandleState.IN_USE: frozenset({HandleState.TERMINATING}),
    HandleState.TERMINATING: frozenset({HandleState.DESTROYED}),
    HandleState.DESTROYED: frozenset(),
}


@dataclass(eq=False)
class SandboxHandle:
    """One live container, owned by at most one submission.

    Timestamps come from ``time.monotonic``. ``deadline`` is set when the
    handle is claimed and is what the reaper compares against.
    """

    spec: ImageSpec
    limits: ResourceLimits
    handle_id: str = field(default_factory=lambda: uuid4().hex)
    container_id: str | None = None
    state: HandleState = HandleState.CREATING
    created_at: float = field(default_factory=time.monotonic)
    deadline: float | None = None

    @property
    def usable(self) -> bool:
        return self.state in (HandleState.READY, HandleState.IN_USE)

    def transition(self, new_state: HandleState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise SandboxStateError(
                f"Sandbox {self.handle_id} cannot move from {self.state.value} to {new_state.value}"
            )
        logger.debug(f"Sandbox {self.handle_id} {self.state.value} -> {new_state.value}")
        self.state = new_state


class SandboxPool:
    """Bounds the number of live sandboxes and owns their creation and destruction.

    The slot counter is a counting semaphore. A slot is taken before a
    container is created and given back exactly once, when its handle is
    released.
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        size: int,
        hard_limits: ResourceLimits,
        label: str = "coreason.coderunner",
        acquire_timeout: float = 30.0,
        kill_grace: float = 2.0,
    ):
        """Initializes the SandboxPool.

        Args:
            runtime: Container runtime used to create and destroy containers.
            size: Maximum number of concurrently live sandboxes.
            hard_limits: Ceiling applied to every container regardless of what is requested.
            label: Label key marking containers as managed by a code runner.
            acquire_timeout: Default wait for a free slot, in seconds.
            kill_grace: Upper bound on how long a single destroy may take, in seconds.
        """
        if size < 1:
            raise ValueError("Pool size must be at least 1")
        self.runtime = runtime
        self.size = size
        self.hard_limits = hard_limits
        self.label = label
        self.acquire_timeout = acquire_timeout
        self.kill_grace = kill_grace
        self.instance_id = uuid4().hex
        self.peak_in_use = 0
        self._slots = asyncio.Semaphore(size)
        self._handles: dict[str, SandboxHandle] = {}
        self._pending_destroys: set[asyncio.Future[None]] = set()

    @property
    def in_use(self) -> int:
        return len(self._handles)

    def live_handles(self) -> list[SandboxHandle]:
        return list(self._handles.values())

    def handle_for_container(self, container_id: str) -> SandboxHandle | None:
        for handle in self._handles.values():
            if handle.container_id == container_id:
                return handle
        return None

    def labels_for(self, handle: SandboxHandle) -> dict[str, str]:
        return {
            self.label: "1",
            f"{self.label}.instance": self.instance_id,
            f"{self.label}.handle": handle.handle_id,
            f"{self.label}.language": handle.spec.language_id,
            f"{self.label}.created": f"{time.time():.3f}",
        }

    async def acquire(
        self,
        spec: ImageSpec,
        limits: ResourceLimits | None = None,
        timeout: float | None = None,
    ) -> SandboxHandle:
        """Take a slot and start a fresh container for it.

        Args:
            spec: Image to instantiate.
            limits: Requested limits; clamped to the pool's hard limits.
            timeout: How long to wait for a free slot. Defaults to ``acquire_timeout``.

        Returns:
            SandboxHandle: A handle in the ``ready`` state.

        Raises:
            PoolExhausted: If no slot frees up within the timeout.
            SandboxCreationFailed: If the runtime cannot start the container.
        """
        wait = self.acquire_timeout if timeout is None else timeout
        try:
            await asyncio.wait_for(self._slots.acquire(), timeout=wait)
        except asyncio.TimeoutError:
            logger.warning(f"Sandbox pool exhausted ({self.size} in use) after waiting {wait:.2f}s")
            raise PoolExhausted(wait) from None

        effective = (limits or self.hard_limits).clamp(self.hard_limits)
        handle = SandboxHandle(spec=spec, limits=effective)
        self._handles[handle.handle_id] = handle
        self.peak_in_use = max(self.peak_in_use, self.in_use)

        try:
            container_id = await self.runtime.create(spec, effective, self.labels_for(handle))
        except Exception as e:
            self._abandon(handle)
            raise SandboxCreationFailed(spec.image, str(e) or type(e).__name__) from e
        except BaseException:
            self._abandon(handle)
            raise

        if handle.state is not HandleState.CREATING:
            # Released (e.g. by the reaper) while the runtime was still starting it.
            handle.container_id = container_id
            await self._terminate(handle)
            raise SandboxCreationFailed(spec.image, "sandbox was released during creation")

        handle.container_id = container_id
        handle.transition(HandleState.READY)
        logger.info(
            f"Acquired sandbox {handle.handle_id} ({spec.language_id}, {self.in_use}/{self.size} in use)"
        )
        return handle

    def claim(self, handle: SandboxHandle, budget: float) -> None:
        """Mark a ready handle as in use by a submission that needs ``budget`` seconds."""
        handle.transition(HandleState.IN_USE)
        handle.deadline = time.monotonic() + budget

    async def release(self, handle: SandboxHandle) -> None:
        """Destroy the handle's container and give its slot back.

        Idempotent: releasing a handle that is already terminating or destroyed
        does nothing. Destruction failures are logged, never raised.

        Waits at most ``kill_grace`` for the container to go away. A destroy
        that takes longer keeps running in the background and the slot stays
        taken until it finishes, so the number of live containers never
        exceeds the pool size. A handle released while still being created
        is finished off by ``acquire`` once the runtime returns its container.
        """
        if handle.state in (HandleState.TERMINATING, HandleState.DESTROYED):
            return

        was_creating = handle.state is HandleState.CREATING
        handle.transition(HandleState.TERMINATING)
        if was_creating:
            return
        await self._terminate(handle)

    async def _terminate(self, handle: SandboxHandle) -> None:
        if handle.container_id is None:
            self._forget(handle)
            return

        destroy = asyncio.ensure_future(self._destroy_quietly(handle.container_id))
        self._pending_destroys.add(destroy)
        destroy.add_done_callback(self._pending_destroys.discard)
        destroy.add_done_callback(lambda _: self._forget(handle))

        done, _ = await asyncio.wait({destroy}, timeout=self.kill_grace)
        if done:
            self._forget(handle)
        else:
            logger.warning(
                f"Destroying container {handle.container_id[:12]} took longer than {self.kill_grace}s; "
                f"holding sandbox {handle.handle_id}'s slot until it is gone"
            )

    def _abandon(self, handle: SandboxHandle) -> None:
        if handle.state is HandleState.CREATING:
            handle.transition(HandleState.TERMINATING)
        self._forget(handle)

    def _forget(self, handle: SandboxHandle) -> None:
        if handle.state is HandleState.DESTROYED:
            return
        handle.transition(HandleState.DESTROYED)
        if self._handles.pop(handle.handle_id, None) is not None:
            self._slots.release()
        logger.info(f"Released sandbox {handle.handle_id} ({self.in_use}/{self.size} in use)")

    async def destroy_container(self, container_id: str) -> None:
        """Destroy a container by id, for containers that have no live handle."""
        try:
            await asyncio.wait_for(self._destroy_quietly(container_id), timeout=self.kill_grace)
        except asyncio.TimeoutError:
            logger.warning(
                f"Destroying container {container_id[:12]} took longer than {self.kill_grace}s; "
                "leaving it to the reaper"
            )

    async def _destroy_quietly(self, container_id: str) -> None:
        try:
            await self.runtime.destroy(container_id)
        except Exception as e:
            logger.warning(f"Error destroying container {container_id[:12]}: {e}")

    def check_invariants(self) -> None:
        """Raise SandboxStateError if the pool's bookkeeping is inconsistent."""
        if self.in_use > self.size:
            raise SandboxStateError(f"{self.in_use} sandboxes live, ceiling is {self.size}")
        for handle in self._handles.values():
            if handle.state is HandleState.DESTROYED:
                raise SandboxStateError(f"Destroyed sandbox {handle.handle_id} is still tracked")

    async def close(self) -> None:
        """Release every live handle and wait for outstanding destroys."""
        handles = self.live_handles()
        logger.info(f"Shutting down sandbox pool. Releasing {len(handles)} sandboxes.")
        for handle in handles:
            await self.release(handle)
        if self._pending_destroys:
            await asyncio.gather(*self._pending_destroys)
