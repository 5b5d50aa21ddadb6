import asyncio
import logging
from typing import Any, Awaitable, Callable, List, TypeVar

from .errors import OperationCancelled

T = TypeVar("T")

logger = logging.getLogger("CancellationToken")


class CancellationToken:
    """
    Cooperative cancellation signal shared across async layers.

    Cancelling sets a flag, wakes anything waiting in ``race`` and fires the
    registered callbacks once. Cancelling again is a no-op.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._event = asyncio.Event()
        self._callbacks: List[Callable[[], Any]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> bool:
        """Trigger the token. Returns False if it was already cancelled."""
        if self._cancelled:
            return False

        self._cancelled = True
        self._event.set()

        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.error(f"Cancellation callback failed: {e}")
        return True

    def add_callback(self, callback: Callable[[], Any]) -> None:
        """Run ``callback`` once when the token fires (immediately if it already has)."""
        if self._cancelled:
            callback()
            return
        self._callbacks.append(callback)

    def remove_callback(self, callback: Callable[[], Any]) -> None:
        try:
            self._callbacks.remove(callback)
        except ValueError:
            pass

    async def wait(self) -> None:
        await self._event.wait()

    async def race(self, awaitable: Awaitable[T]) -> T:
        """
        Await ``awaitable`` unless the token fires first.

        Raises:
            OperationCancelled: the token fired before the awaitable finished.
                The awaitable is cancelled and fully unwound before this raises.
        """
        task = asyncio.ensure_future(awaitable)
        if self._cancelled:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise OperationCancelled()

        waiter = asyncio.ensure_future(self.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)

        if task.cancelled():
            raise OperationCancelled()
        return task.result()
