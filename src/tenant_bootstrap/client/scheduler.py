"""Request scheduler - queued, adaptively throttled API calls.

Every API call made during a bootstrap goes through RequestScheduler.submit().
The scheduler keeps a single queue, starts at most one request per tick while
the number of in-flight requests is below the current worker limit, and tunes
that limit from the outcome of recent requests:

  - more than 5 errors among the last 20 outcomes: one worker less
  - 20 outcomes in a row without trouble: one worker more (max 5)
  - a 429 from the API: back to a single worker at once

Transient failures keep their place in the queue and are retried after a linear
backoff; requests the API rejects are resolved with an error payload and never
retried.
"""

import asyncio
import json
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Literal

from ..models import (
    APIRequest,
    APIResult,
    BootstrapperError,
    NetworkError,
    RateLimitError,
    ServerFaultError,
)
from .api_client_core import _ClientLogger, is_transient_fault

Transport = Callable[[str, dict[str, Any] | None], Awaitable[dict[str, Any]]]
ErrorNotifier = Callable[[BootstrapperError], None]
RequestStatus = Literal["ok", "error", "rate-limited"]

MIN_WORKERS = 1
MAX_WORKERS = 5
STATUS_HISTORY_SIZE = 20
MAX_ERRORS_IN_HISTORY = 5
# Failures on one request before it is reported on every retry
ESCALATE_AFTER_FAILURES = 10

RATE_LIMIT_MESSAGE = (
    "Oh dear, you've been temporarily rate limited. The maximum requests allowed is 5 pr. second."
)


@dataclass
class QueuedRequest:
    id: str
    request: APIRequest
    future: asyncio.Future
    fail_count: int = 0
    working: bool = False


class RequestScheduler:
    """Single queue of API calls with an adaptive concurrency window."""

    def __init__(
        self,
        transport: Transport,
        error_notifier: ErrorNotifier | None = None,
        log_level: str = "silent",
        tick_interval: float = 0.005,
        rate_limit_pause: float = 5.0,
        retry_delay: float = 1.0,
    ) -> None:
        self.transport = transport
        self.error_notifier: ErrorNotifier = error_notifier or (lambda _err: None)
        self.log_level = log_level
        self.tick_interval = tick_interval
        self.rate_limit_pause = rate_limit_pause
        self.retry_delay = retry_delay

        self.queue: list[QueuedRequest] = []
        self.max_workers = MIN_WORKERS
        self.status_history: deque[RequestStatus] = deque(maxlen=STATUS_HISTORY_SIZE)
        self.is_killed = False

        self._loop_task: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()
        self._logger = _ClientLogger("API")

    def set_error_notifier(self, fn: ErrorNotifier) -> None:
        self.error_notifier = fn

    def set_log_level(self, level: str) -> None:
        self.log_level = level

    @property
    def in_flight(self) -> int:
        return sum(1 for q in self.queue if q.working)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the tick loop on the running event loop (idempotent)."""
        if self.is_killed:
            raise RuntimeError("Request scheduler has been killed")
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.get_running_loop().create_task(self._run())

    def kill(self) -> None:
        """Stop ticking for good. In-flight requests are left to finish on their own."""
        self.is_killed = True
        if self._loop_task is not None:
            self._loop_task.cancel()
            self._loop_task = None

    async def submit(self, request: APIRequest) -> APIResult:
        """Queue a request and wait for its result."""
        self.start()
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self.queue.append(QueuedRequest(id=str(uuid.uuid4()), request=request, future=future))
        return await future

    # ------------------------------------------------------------------
    # Adaptive window
    # ------------------------------------------------------------------

    def record_request_status(self, status: RequestStatus) -> None:
        """Adjust max_workers from the outcome of the most recent requests."""
        self.status_history.appendleft(status)

        if status == "rate-limited":
            self.max_workers = MIN_WORKERS
            return

        errors = sum(1 for s in self.status_history if s == "error")
        if errors > MAX_ERRORS_IN_HISTORY:
            self.max_workers -= 1
            self.status_history.clear()
        elif len(self.status_history) >= STATUS_HISTORY_SIZE and all(
            s == "ok" for s in self.status_history
        ):
            self.max_workers += 1
            self.status_history.clear()

        self.max_workers = max(MIN_WORKERS, min(MAX_WORKERS, self.max_workers))

    # ------------------------------------------------------------------
    # Work loop
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        while not self.is_killed:
            self.work()
            await asyncio.sleep(self.tick_interval)

    def work(self) -> None:
        """One tick: start the first idle request if a worker slot is free."""
        if self.is_killed:
            return
        if self.in_flight >= self.max_workers:
            return
        item = next((q for q in self.queue if not q.working), None)
        if item is None:
            return

        item.working = True
        task = asyncio.get_running_loop().create_task(self._execute(item))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _notify(self, item: QueuedRequest, error: str, will_retry: bool) -> None:
        if item.request.suppress_errors:
            return
        self.error_notifier(BootstrapperError(error=error, will_retry=will_retry))

    def _resolve(self, item: QueuedRequest, result: APIResult) -> None:
        if not item.future.done():
            item.future.set_result(result)
        self.queue = [q for q in self.queue if q.id != item.id]

    async def _execute(self, item: QueuedRequest) -> None:
        query_error = ""
        data: dict[str, Any] | None = None
        try:
            if self.log_level == "verbose":
                self._logger.info(json.dumps(
                    {"query": item.request.query, "variables": item.request.variables}, indent=1
                ))
            data = await self.transport(item.request.query, item.request.variables)
            if self.log_level == "verbose":
                self._logger.info(json.dumps(data, indent=1, default=str))
        except RateLimitError:
            self._notify(item, RATE_LIMIT_MESSAGE, will_retry=True)
            self.record_request_status("rate-limited")
            await asyncio.sleep(self.rate_limit_pause)
            item.working = False
            return
        except ServerFaultError as e:
            await self._retry_later(item, str(e), notify_now=False)
            return
        except NetworkError as e:
            await self._retry_later(item, str(e) or type(e).__name__, notify_now=True)
            return
        except Exception as e:  # noqa: BLE001
            if self.log_level == "verbose":
                self._logger.error(f"{type(e).__name__}: {e}")
            message = str(e) or type(e).__name__
            if is_transient_fault(message):
                await self._retry_later(item, message, notify_now=False)
                return
            query_error = message

        self.record_request_status("ok")
        if query_error:
            self._notify(item, query_error, will_retry=False)
            self._resolve(item, APIResult(data=None, errors=[{"error": query_error}]))
        else:
            self._resolve(item, APIResult(data=data))

    async def _retry_later(self, item: QueuedRequest, error: str, notify_now: bool) -> None:
        """Keep the request in place and release it after fail_count seconds."""
        self.record_request_status("error")
        if notify_now:
            self._notify(item, error, will_retry=True)

        item.fail_count += 1
        await asyncio.sleep(item.fail_count * self.retry_delay)

        if item.fail_count > ESCALATE_AFTER_FAILURES:
            self._notify(item, error, will_retry=True)

        item.working = False
