# ============================================================================
# EVENT REPORTER
# ============================================================================
# STATUS: Core - Event delivery to the caller
# PURPOSE: Per-step results, sandbox milestones and final job status
# CREATED: 18 OCT 2026
# ============================================================================
"""
Event Reporter

Delivers EngineEvents to whoever launched the jobs.

Implementations:
1. LoggingReporter: one log line per event (default)
2. CollectingReporter: keeps events in memory (embedding, tests)
3. CallbackReporter: hands each event to a caller-supplied function
4. HTTPReporter: POSTs events to a callback URL from a background queue
5. MultiReporter: fans out to several reporters

Reporting never fails a job: `publish` logs delivery problems and returns
False instead of raising.
"""

import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, List, Optional

import aiohttp

from core.logging import get_logger, ComponentType
from core.models.events import EngineEvent, EventStatus, EventType
from core.models.result import JobResult, StepResult

logger = get_logger(__name__, ComponentType.ORCHESTRATOR)


# ============================================================================
# ABSTRACT REPORTER
# ============================================================================

class EventReporter(ABC):
    """Abstract base for event reporters."""

    @abstractmethod
    async def emit(self, event: EngineEvent) -> None:
        """
        Deliver one event.

        Args:
            event: Event to deliver
        """
        pass

    async def publish(self, event: EngineEvent) -> bool:
        """
        Deliver an event without letting delivery errors escape.

        Returns:
            True if delivery succeeded
        """
        try:
            await self.emit(event)
            return True
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(
                f"{type(self).__name__} failed to deliver {event.event_type.value}: {e}"
            )
            return False

    async def step_result(self, job_id: str, result: StepResult) -> bool:
        """Report a step result as it is recorded."""
        return await self.publish(EngineEvent.for_step(job_id, result))

    async def job_result(self, result: JobResult, stage: Optional[str] = None) -> bool:
        """Report a job's final status."""
        return await self.publish(EngineEvent.for_job(result, stage))

    async def close(self) -> None:
        """Clean up resources."""
        pass


# ============================================================================
# IMPLEMENTATIONS
# ============================================================================

_LEVELS = {
    EventStatus.SUCCESS: logging.INFO,
    EventStatus.INFO: logging.INFO,
    EventStatus.WARNING: logging.WARNING,
    EventStatus.FAILURE: logging.ERROR,
}


class LoggingReporter(EventReporter):
    """Writes each event to the engine log."""

    def __init__(self, logger_name: str = "engine.events"):
        self._logger = logging.getLogger(logger_name)

    async def emit(self, event: EngineEvent) -> None:
        parts = [event.event_type.value]
        if event.job_id:
            parts.append(f"job={event.job_id}")
        if event.step_id:
            parts.append(f"step={event.step_id}")
        if event.step_result is not None:
            parts.append(
                f"outcome={event.step_result.outcome.value} "
                f"conclusion={event.step_result.conclusion.value}"
            )
        if event.job_result is not None:
            parts.append(f"status={event.job_result.status.value}")
            if event.job_result.failed_step_id:
                parts.append(f"failed_step={event.job_result.failed_step_id}")
        if event.message:
            parts.append(f"- {event.message}")
        self._logger.log(_LEVELS.get(event.status, logging.INFO), " ".join(parts))


class CollectingReporter(EventReporter):
    """Keeps every event in memory."""

    def __init__(self):
        self.events: List[EngineEvent] = []

    async def emit(self, event: EngineEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: EventType) -> List[EngineEvent]:
        return [e for e in self.events if e.event_type == event_type]

    def step_results(self, job_id: Optional[str] = None) -> List[StepResult]:
        return [
            e.step_result for e in self.events
            if e.step_result is not None and (job_id is None or e.job_id == job_id)
        ]

    def job_results(self) -> List[JobResult]:
        return [e.job_result for e in self.events if e.job_result is not None]


class CallbackReporter(EventReporter):
    """Calls `callback(event)`; the callback may be sync or async."""

    def __init__(self, callback: Callable[[EngineEvent], Any]):
        self._callback = callback

    async def emit(self, event: EngineEvent) -> None:
        outcome = self._callback(event)
        if inspect.isawaitable(outcome):
            await outcome


class HTTPReporter(EventReporter):
    """
    POSTs events as JSON to a callback URL.

    emit() only queues the event; a background task delivers queued events
    in order, retrying with exponential backoff and giving up after
    max_retries. close() waits up to drain_timeout for the queue to empty.
    """

    def __init__(
        self,
        callback_url: str,
        timeout: float = 10.0,
        max_retries: int = 3,
        drain_timeout: float = 30.0,
    ):
        self._callback_url = callback_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._max_retries = max_retries
        self._drain_timeout = drain_timeout
        self._session: Optional[aiohttp.ClientSession] = None
        self._queue: "asyncio.Queue[EngineEvent]" = asyncio.Queue()
        self._sender: Optional[asyncio.Task] = None

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def emit(self, event: EngineEvent) -> None:
        if self._sender is None or self._sender.done():
            self._sender = asyncio.create_task(self._send_loop())
        self._queue.put_nowait(event)

    async def _send_loop(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self.deliver(event)
            except Exception as e:
                logger.error(f"Dropped {event.event_type.value} event for job {event.job_id}: {e}")
            finally:
                self._queue.task_done()

    async def deliver(self, event: EngineEvent) -> None:
        """
        POST one event now.

        Raises:
            RuntimeError: every attempt failed
        """
        url = f"{self._callback_url}/events"
        payload = event.model_dump(mode="json")
        last_error: Optional[str] = None

        for attempt in range(self._max_retries):
            try:
                session = await self._get_session()
                async with session.post(url, json=payload) as response:
                    if response.status in (200, 201, 202, 204):
                        return
                    body = await response.text()
                    last_error = f"status={response.status}, body={body[:500]}"
                    logger.warning(f"Event callback failed: {last_error}")
            except asyncio.TimeoutError:
                last_error = "timeout"
                logger.warning(
                    f"Event callback timeout (attempt {attempt + 1}/{self._max_retries})"
                )
            except aiohttp.ClientError as e:
                last_error = str(e)
                logger.warning(
                    f"Event callback error: {e} (attempt {attempt + 1}/{self._max_retries})"
                )

            if attempt < self._max_retries - 1:
                await asyncio.sleep(2 ** attempt)

        raise RuntimeError(
            f"Event delivery failed after {self._max_retries} attempts: {last_error}"
        )

    async def close(self) -> None:
        if self._sender is not None:
            try:
                await asyncio.wait_for(self._queue.join(), self._drain_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Event callback drain timed out; dropping {self.pending} events")
            self._sender.cancel()
            try:
                await self._sender
            except asyncio.CancelledError:
                pass
            self._sender = None
        if self._session is not None and not self._session.closed:
            await self._session.close()


class MultiReporter(EventReporter):
    """Delivers every event to each wrapped reporter."""

    def __init__(self, *reporters: EventReporter):
        self.reporters = list(reporters)

    async def emit(self, event: EngineEvent) -> None:
        for reporter in self.reporters:
            await reporter.publish(event)

    async def close(self) -> None:
        for reporter in self.reporters:
            await reporter.close()


# ============================================================================
# FACTORY
# ============================================================================

def create_reporter(callback_url: Optional[str] = None) -> EventReporter:
    """
    Create the reporter for the current configuration.

    Events always go to the log; a callback URL adds HTTP delivery.
    """
    if callback_url:
        logger.info(f"Using HTTP event reporter: {callback_url}")
        return MultiReporter(LoggingReporter(), HTTPReporter(callback_url))
    return LoggingReporter()


# ============================================================================
# EXPORTS
# ============================================================================

__all__ = [
    "EventReporter",
    "LoggingReporter",
    "CollectingReporter",
    "CallbackReporter",
    "HTTPReporter",
    "MultiReporter",
    "create_reporter",
]
