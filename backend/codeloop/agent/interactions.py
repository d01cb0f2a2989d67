import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

from codeloop.errors import InteractionCancelledError, InteractionTimeoutError


logger = logging.getLogger("codeloop.agent.interactions")


class PendingRequests:
    """Requests parked until the client answers them over a separate HTTP call."""

    prefix = "request"
    timeout_message = "Request timed out."

    def __init__(self, timeout: float):
        self.timeout = timeout
        self._pending: dict[str, asyncio.Future] = {}
        self._counter = 0

    def _next_id(self) -> str:
        self._counter += 1
        return f"{self.prefix}-{int(time.time() * 1000)}-{self._counter}"

    async def _wait(self, notify: Callable[[str], Awaitable[Any] | Any]) -> Any:
        request_id = self._next_id()
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            result = notify(request_id)
            if inspect.isawaitable(result):
                await result
            return await asyncio.wait_for(future, self.timeout)
        except asyncio.TimeoutError:
            logger.warning("%s timed out after %ss", request_id, self.timeout)
            raise InteractionTimeoutError(self.timeout_message) from None
        finally:
            self._pending.pop(request_id, None)

    def has_pending(self, request_id: str) -> bool:
        return request_id in self._pending

    def resolve(self, request_id: str, value: Any) -> bool:
        future = self._pending.get(request_id)
        if future is None or future.done():
            return False
        future.set_result(value)
        return True

    def reject(self, request_id: str, message: str) -> bool:
        future = self._pending.get(request_id)
        if future is None or future.done():
            return False
        future.set_exception(InteractionCancelledError(message))
        return True


class ScreenshotBroker(PendingRequests):
    prefix = "screenshot"
    timeout_message = (
        "Screenshot request timed out. The client may not be connected or the "
        "preview is not available."
    )

    def __init__(self, timeout: float = 30.0):
        super().__init__(timeout)

    async def request_screenshot(self, notify: Callable[[str], Any]) -> str:
        return await self._wait(notify)


class QuestionBroker(PendingRequests):
    prefix = "question"
    timeout_message = (
        "Question request timed out. The user did not respond within the allowed time."
    )

    def __init__(self, timeout: float = 300.0):
        super().__init__(timeout)

    async def request_answers(
        self,
        questions: list[dict[str, Any]],
        context: str | None,
        notify: Callable[[str, list[dict[str, Any]], str | None], Any],
    ) -> dict[str, Any]:
        return await self._wait(lambda request_id: notify(request_id, questions, context))

    def cancel(self, request_id: str) -> bool:
        return self.reject(request_id, "User cancelled the question request.")
