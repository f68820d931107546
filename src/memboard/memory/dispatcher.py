"""Turn-count trigger, durable dispatch queue and the background worker."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable

from ..config import MemoryConfig
from ..logging import JSONLLogger, get_logger
from .models import DispatchEvent, Turn, utcnow
from .store import MemoryStore

logger = logging.getLogger(__name__)

Handler = Callable[[DispatchEvent], Awaitable[object]]


class Dispatcher:
    """Decides when a conversation needs summarizing and queues the request.

    The queue lives in the store, so requests survive restarts. An
    in-process event wakes the worker as soon as something is queued.
    """

    def __init__(
        self,
        store: MemoryStore,
        config: MemoryConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
        json_logger: JSONLLogger | None = None,
    ) -> None:
        self.store = store
        self.config = config or MemoryConfig()
        self.clock = clock
        self.json_logger = json_logger
        self._wakeup: asyncio.Event | None = None

    @property
    def events(self) -> JSONLLogger:
        return self.json_logger or get_logger()

    @property
    def wakeup(self) -> asyncio.Event:
        if self._wakeup is None:
            self._wakeup = asyncio.Event()
        return self._wakeup

    def _notify(self) -> None:
        self.wakeup.set()

    def on_new_turn(
        self,
        conversation_id: str,
        agent_id: str,
        owner_id: str,
        role: str,
        content: str,
        timestamp: datetime | None = None,
        message_id: str | None = None,
    ) -> DispatchEvent | None:
        """Record a turn and queue a cycle when the threshold is reached.

        Args:
            conversation_id: The conversation identifier.
            agent_id: The agent identifier.
            owner_id: The owner identifier.
            role: Message role.
            content: Message text.
            timestamp: When the message was produced, now if None.
            message_id: External id, a repeated id is ignored.

        Returns:
            The queued event if this turn crossed the threshold, else None.
        """
        turn = Turn(
            conversation_id=conversation_id,
            agent_id=agent_id,
            owner_id=owner_id,
            role=role,
            content=content,
            message_id=message_id,
            created_at=timestamp or self.clock(),
        )

        with self.store.transaction():
            stored = self.store.add_turn(turn)
            if stored is None:
                logger.debug("Ignoring duplicate message %s in %s", message_id, conversation_id)
                return None

            state = self.store.increment_trigger_counter(
                conversation_id,
                agent_id,
                owner_id,
                self.config.default_update_frequency,
            )
            if state.turns_since_dispatch < state.update_frequency:
                return None

            event = self.store.enqueue_dispatch(
                conversation_id, agent_id, owner_id, full=False, now=self.clock()
            )
            self.store.reset_trigger_counter(conversation_id)

        self.events.log_dispatch(
            conversation_id, agent_id=agent_id, full=False, reason="threshold"
        )
        self._notify()
        return event

    def set_update_frequency(self, conversation_id: str, frequency: int) -> None:
        """Change how many turns trigger a cycle for one conversation."""
        if isinstance(frequency, bool) or not isinstance(frequency, int) or frequency < 1:
            raise ValueError("update frequency must be a positive integer")

        state = self.store.get_trigger_state(conversation_id)
        board = self.store.get_board(conversation_id)
        agent_id = state.agent_id if state else (board.agent_id if board else "")
        owner_id = state.owner_id if state else (board.owner_id if board else "")
        self.store.set_update_frequency(conversation_id, frequency, agent_id, owner_id)

    def trigger_now(
        self,
        conversation_id: str,
        full: bool = False,
        agent_id: str | None = None,
        owner_id: str | None = None,
    ) -> DispatchEvent:
        """Queue a cycle regardless of the turn counter.

        Raises:
            KeyError: If the conversation is unknown and no agent/owner is given.
        """
        if agent_id is None or owner_id is None:
            state = self.store.get_trigger_state(conversation_id)
            board = self.store.get_board(conversation_id)
            known = state or board
            if known is None:
                raise KeyError(f"Unknown conversation: {conversation_id}")
            agent_id = agent_id or known.agent_id
            owner_id = owner_id or known.owner_id

        with self.store.transaction():
            event = self.store.enqueue_dispatch(
                conversation_id, agent_id, owner_id, full=full, now=self.clock()
            )
            self.store.reset_trigger_counter(conversation_id)

        self.events.log_dispatch(
            conversation_id, agent_id=agent_id, full=full, reason="manual"
        )
        self._notify()
        return event

    def claim_next(self, exclude: set[str] | None = None) -> DispatchEvent | None:
        """Claim the next runnable request.

        Requests left in processing longer than the lock timeout, by a
        worker that died mid-cycle, are put back in the queue first.
        """
        self.requeue_stale()
        return self.store.claim_next_dispatch(self.clock(), exclude=exclude)

    def complete(self, event: DispatchEvent) -> None:
        self.store.complete_dispatch(event.id)

    def requeue_stale(self, timeout: timedelta | None = None) -> int:
        """Return requests abandoned in processing to the queue."""
        timeout = timeout or timedelta(seconds=self.config.lock_timeout_seconds)
        count = self.store.requeue_stale_dispatches(self.clock() - timeout)
        if count:
            logger.info("Requeued %d stale summarization requests", count)
            self._notify()
        return count


class DispatchWorker:
    """Consumes queued requests, running cycles of distinct conversations in parallel."""

    def __init__(
        self,
        dispatcher: Dispatcher,
        handler: Handler,
        concurrency: int = 4,
        poll_interval: float = 5.0,
    ) -> None:
        """Initialize the worker.

        Args:
            dispatcher: Source of queued requests.
            handler: Awaited once per claimed request.
            concurrency: Maximum requests in flight.
            poll_interval: Seconds between queue polls when nothing wakes the worker.
        """
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.dispatcher = dispatcher
        self.handler = handler
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self._running: dict[str, asyncio.Task] = {}
        self._stopping = False

    @property
    def in_flight(self) -> int:
        return len(self._running)

    async def _process(self, event: DispatchEvent) -> None:
        try:
            await self.handler(event)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(
                "Summarization request %d for %s failed", event.id, event.conversation_id
            )
        finally:
            self.dispatcher.complete(event)
            self._running.pop(event.conversation_id, None)
            self.dispatcher.wakeup.set()

    def _fill(self) -> int:
        """Claim requests until the concurrency limit or the queue is exhausted."""
        started = 0
        while len(self._running) < self.concurrency:
            event = self.dispatcher.claim_next(exclude=set(self._running))
            if event is None:
                break
            self._running[event.conversation_id] = asyncio.create_task(self._process(event))
            started += 1
        return started

    async def drain(self) -> None:
        """Process requests until the queue is empty and nothing is in flight."""
        while True:
            self._fill()
            if not self._running:
                return
            await asyncio.wait(
                list(self._running.values()), return_when=asyncio.FIRST_COMPLETED
            )

    async def run_forever(self) -> None:
        """Process requests as they arrive until stop() is called."""
        self._stopping = False
        wakeup = self.dispatcher.wakeup
        while not self._stopping:
            wakeup.clear()
            self._fill()
            try:
                await asyncio.wait_for(wakeup.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
            except asyncio.CancelledError:
                break

        if self._running:
            await asyncio.gather(*self._running.values(), return_exceptions=True)

    def stop(self) -> None:
        self._stopping = True
        self.dispatcher.wakeup.set()
