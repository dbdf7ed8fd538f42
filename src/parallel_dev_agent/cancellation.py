"""Tracking of in-flight message processing.

Whatever starts an agent turn for a message registers a cancellation
handle here; cancel requests drain it. A message id has at most one
registration at a time.
"""

import asyncio
import logging
import threading
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional, Protocol

from .models import MessageStatus
from .protocols import MessageRepository, NotificationEvent, Notifier

logger = logging.getLogger(__name__)


class Cancellable(Protocol):
    def cancel(self) -> object:
        ...


class CancellationToken:
    """A cancellation handle for work that is not an asyncio task."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> bool:
        already = self._event.is_set()
        self._event.set()
        return not already

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass(frozen=True)
class Registration:
    message_id: int
    session_id: int
    handle: Cancellable


class ProcessingCancellationRegistry:
    """Concurrent map of message id to its cancellation handle and session."""

    def __init__(
        self,
        messages: Optional[MessageRepository] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.messages = messages
        self.notifier = notifier
        self._lock = threading.Lock()
        self._registrations: dict[int, Registration] = {}

    def register(self, message_id: int, session_id: int, handle: Cancellable) -> bool:
        """Register a handle. Returns False if the message is already registered."""
        with self._lock:
            if message_id in self._registrations:
                logger.warning(f"Message {message_id} is already being processed")
                return False
            self._registrations[message_id] = Registration(message_id, session_id, handle)
        logger.info(f"Registered processing of message {message_id} (session {session_id})")
        return True

    def unregister(self, message_id: int) -> bool:
        with self._lock:
            removed = self._registrations.pop(message_id, None)
        if removed is not None:
            logger.debug(f"Unregistered message {message_id}")
        return removed is not None

    def is_active(self, message_id: int) -> bool:
        with self._lock:
            return message_id in self._registrations

    def list_active(self, session_id: int) -> list[int]:
        with self._lock:
            return [
                r.message_id for r in self._registrations.values()
                if r.session_id == session_id
            ]

    async def cancel_one(self, message_id: int) -> bool:
        """Cancel one message's processing.

        Removal and cancellation happen as one step, so a racing
        ``unregister`` can never leave a registration behind after a
        successful cancel.
        """
        with self._lock:
            registration = self._registrations.pop(message_id, None)
        if registration is None:
            return False

        registration.handle.cancel()
        logger.info(f"Cancelled processing of message {message_id}")
        await self._mark_failed(message_id, registration.session_id)
        return True

    async def cancel_all_for_session(self, session_id: int) -> bool:
        """Cancel every registered message of a session.

        When nothing is registered, messages persisted as working are marked
        failed instead; that covers state lost across a restart.
        """
        with self._lock:
            snapshot = [
                r.message_id for r in self._registrations.values()
                if r.session_id == session_id
            ]

        cancelled = False
        for message_id in snapshot:
            if await self.cancel_one(message_id):
                cancelled = True

        if cancelled:
            return True

        if self.messages is None:
            return False

        stale = self.messages.mark_messages(
            session_id, MessageStatus.WORKING, MessageStatus.FAILED
        )
        for message in stale:
            logger.info(f"Marked stale working message {message.id} as failed")
            await self._notify(message.id, session_id, MessageStatus.FAILED)
        return bool(stale)

    @asynccontextmanager
    async def processing(self, message_id: int, session_id: int) -> AsyncIterator[bool]:
        """Register the current task for the duration of the block.

        Yields whether the registration was made; a duplicate yields False
        and leaves the existing registration alone.
        """
        task = asyncio.current_task()
        registered = self.register(message_id, session_id, task)
        try:
            yield registered
        finally:
            if registered:
                self.unregister(message_id)

    async def _mark_failed(self, message_id: int, session_id: int) -> None:
        if self.messages is not None:
            self.messages.update_message_status(message_id, MessageStatus.FAILED)
        await self._notify(message_id, session_id, MessageStatus.FAILED)

    async def _notify(self, message_id: int, session_id: int, status: MessageStatus) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.notify(
                NotificationEvent.MESSAGE_STATUS_CHANGED,
                {"message_id": message_id, "session_id": session_id, "status": status.value},
            )
        except Exception:
            logger.exception(f"Notifier failed for message {message_id}")
