import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .cancellation import CancellationToken
from .models import PermissionDecision

PERMISSION_TIMEOUT_SECONDS = 5 * 60

TIMED_OUT_MESSAGE = "Permission request timed out"
ABORTED_MESSAGE = "Request aborted"
SUPERSEDED_MESSAGE = "Permission request superseded"
DENIED_MESSAGE = "User denied permission"


@dataclass
class PendingPermission:
    """A registered approval request that has not been decided yet."""

    id: str
    created_at: float
    tool_input: Dict[str, Any]
    future: "asyncio.Future[PermissionDecision]"
    cancellation_signal: Optional[CancellationToken] = None
    on_abort: Optional[Callable[[], None]] = field(default=None, repr=False)


class PermissionCoordinator:
    """
    Correlates a streaming turn that is waiting for approval with the later,
    independent request that carries the human decision.

    Entries are keyed by the permission request id chosen by the agent. Each
    entry is resolved exactly once: by ``resolve``, by the timeout sweep, or
    by its cancellation signal. All mutations run to completion without
    awaiting, so the map needs no lock on a single event loop.
    """

    def __init__(
        self,
        timeout_seconds: float = PERMISSION_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        logger: Optional[logging.Logger] = None,
    ):
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        self.logger = logger or logging.getLogger("PermissionCoordinator")

        self._pending: Dict[str, PendingPermission] = {}
        self._sweeper: Optional[asyncio.Task] = None

    async def register(
        self,
        permission_id: str,
        tool_input: Dict[str, Any],
        cancellation_signal: Optional[CancellationToken] = None,
    ) -> PermissionDecision:
        """
        Register a pending permission and wait for its decision.

        Args:
            permission_id: Id the agent attached to the permission request
            tool_input: Original tool input, used to backfill plain allows
            cancellation_signal: Optional token that denies the request when it fires

        Returns:
            The decision. Timeouts and aborts come back as ``deny``.
        """
        self.sweep()

        existing = self._pending.get(permission_id)
        if existing is not None:
            self.logger.warning(
                f"Permission id {permission_id} registered twice, superseding earlier request"
            )
            self._settle(existing, PermissionDecision.deny(SUPERSEDED_MESSAGE))

        loop = asyncio.get_running_loop()
        entry = PendingPermission(
            id=permission_id,
            created_at=self._clock(),
            tool_input=dict(tool_input or {}),
            future=loop.create_future(),
            cancellation_signal=cancellation_signal,
        )
        self._pending[permission_id] = entry
        self.logger.info(f"Registered pending permission {permission_id}")

        if cancellation_signal is not None:

            def on_abort() -> None:
                if self._pending.get(permission_id) is entry:
                    self.logger.info(f"Permission {permission_id} aborted")
                    self._settle(entry, PermissionDecision.deny(ABORTED_MESSAGE))

            entry.on_abort = on_abort
            cancellation_signal.add_callback(on_abort)

        try:
            return await entry.future
        finally:
            # Awaiter went away (task cancelled) before any decision arrived
            if self._pending.get(permission_id) is entry:
                self._settle(entry, PermissionDecision.deny(ABORTED_MESSAGE))

    def resolve(self, permission_id: str, decision: PermissionDecision) -> bool:
        """
        Deliver a decision for a pending permission.

        Returns:
            True if a pending entry was found and resolved, False otherwise
            (never registered, already resolved, or expired).
        """
        entry = self._pending.get(permission_id)
        if entry is None:
            self.logger.debug(f"No pending permission for {permission_id}")
            return False

        if decision.behavior == "allow" and decision.updated_input is None:
            decision = decision.model_copy(update={"updated_input": entry.tool_input})

        self._settle(entry, decision)
        self.logger.info(f"Resolved permission {permission_id}: {decision.behavior}")
        return True

    def sweep(self) -> int:
        """Deny and drop every entry older than the timeout. Returns the count."""
        now = self._clock()
        expired = [
            entry
            for entry in self._pending.values()
            if now - entry.created_at > self.timeout_seconds
        ]
        for entry in expired:
            self._settle(entry, PermissionDecision.deny(TIMED_OUT_MESSAGE))

        if expired:
            self.logger.info(f"Timed out {len(expired)} pending permissions")
        return len(expired)

    def pending_ids(self) -> List[str]:
        return list(self._pending.keys())

    def is_pending(self, permission_id: str) -> bool:
        return permission_id in self._pending

    def start_sweeper(self, interval_seconds: float) -> None:
        """Run ``sweep`` periodically on the current loop."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(
                self._run_sweeper(interval_seconds)
            )

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None

    async def _run_sweeper(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            self.sweep()

    def _settle(self, entry: PendingPermission, decision: PermissionDecision) -> None:
        if self._pending.get(entry.id) is entry:
            del self._pending[entry.id]

        if entry.cancellation_signal is not None and entry.on_abort is not None:
            entry.cancellation_signal.remove_callback(entry.on_abort)

        if not entry.future.done():
            entry.future.set_result(decision)
