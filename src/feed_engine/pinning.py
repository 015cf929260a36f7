"""
Favorites and pinned events.

Both are per-user id sets whose authoritative copy lives in the backend. The
engine keeps a local copy that is updated optimistically before the backend
call. When the call fails the local copy is not inverted: the authoritative set
is reloaded and replaces it, which also picks up changes made elsewhere (another
device pinning or unpinning in the meantime).

Each set has a single writer. Toggles are serialized by an `asyncio.Lock`, so
two concurrent pins on different events can never push the pinned set past its
cap.

An optional `on_change` listener is awaited with the optimistic set right after
the local update, before the backend call, so callers can show it immediately.
"""
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, FrozenSet, Iterable

from .errors import CapacityExceededError, DomainError, ReconciliationRequiredError
from .protocols import FavoriteGateway, PinnedGateway

MAX_PINNED_EVENTS = 3
DEFAULT_LIMIT_MESSAGE = f"You can pin at most {MAX_PINNED_EVENTS} events"

ChangeListener = Callable[[FrozenSet[str]], Awaitable[None]]


class ToggleOutcome(str, Enum):
    ADDED = "added"
    REMOVED = "removed"
    LIMIT_REACHED = "limit_reached"
    RECONCILED = "reconciled"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class ToggleResult:
    outcome: ToggleOutcome
    ids: FrozenSet[str]
    message: str | None = None
    error: DomainError | None = None


class _ReconciledSet:
    subject = "set"

    def __init__(self, user_id: str | None, on_change: ChangeListener | None = None):
        self._user_id = user_id
        self._on_change = on_change
        self._ids: FrozenSet[str] = frozenset()
        self._lock = asyncio.Lock()

    @property
    def ids(self) -> FrozenSet[str]:
        return self._ids

    @property
    def user_id(self) -> str | None:
        return self._user_id

    async def _fetch(self, user_id: str) -> Iterable[str]:
        raise NotImplementedError

    async def _add(self, user_id: str, event_id: str):
        raise NotImplementedError

    async def _remove(self, user_id: str, event_id: str):
        raise NotImplementedError

    def _check_capacity(self, limit_message: str | None):
        pass

    async def _notify_change(self):
        if self._on_change is None:
            return
        try:
            await self._on_change(self._ids)
        except Exception as e:
            logging.warning(f"Change listener for {self.subject} failed: {e}")

    async def load(self) -> FrozenSet[str]:
        """Replaces the local copy with the authoritative set. Errors propagate."""
        async with self._lock:
            return await self._reload()

    async def _reload(self) -> FrozenSet[str]:
        if self._user_id is None:
            self._ids = frozenset()
            return self._ids
        ids = frozenset(await self._fetch(self._user_id))
        self._ids = ids
        return ids

    async def _toggle(self, event_id: str, limit_message: str | None = None) -> ToggleResult:
        if self._user_id is None:
            return ToggleResult(ToggleOutcome.SKIPPED, self._ids)

        async with self._lock:
            previous = self._ids
            adding = event_id not in previous
            if adding:
                self._check_capacity(limit_message)
                self._ids = previous | {event_id}
            else:
                self._ids = previous - {event_id}
            await self._notify_change()

            try:
                if adding:
                    await self._add(self._user_id, event_id)
                else:
                    await self._remove(self._user_id, event_id)
            except Exception as e:
                logging.error(f"Failed to update {self.subject} for event {event_id}: {e}")
                error = ReconciliationRequiredError(self.subject, e)
                try:
                    await self._reload()
                except Exception as reload_error:
                    logging.error(f"Failed to reload {self.subject}: {reload_error}")
                    self._ids = previous
                return ToggleResult(ToggleOutcome.RECONCILED, self._ids, error=error)

            outcome = ToggleOutcome.ADDED if adding else ToggleOutcome.REMOVED
            return ToggleResult(outcome, self._ids)


class FavoriteEvents(_ReconciledSet):
    """Uncapped favorite set."""
    subject = "favorites"

    def __init__(
        self, gateway: FavoriteGateway, user_id: str | None, *, on_change: ChangeListener | None = None
    ):
        super().__init__(user_id, on_change)
        self._gateway = gateway

    async def _fetch(self, user_id: str) -> Iterable[str]:
        return await self._gateway.get_favorites(user_id)

    async def _add(self, user_id: str, event_id: str):
        await self._gateway.add_favorite(user_id, event_id)

    async def _remove(self, user_id: str, event_id: str):
        await self._gateway.remove_favorite(user_id, event_id)

    async def toggle(self, event_id: str) -> ToggleResult:
        return await self._toggle(event_id)


class PinnedEvents(_ReconciledSet):
    """Pinned set, capped at `max_pinned` entries."""
    subject = "pinned events"

    def __init__(
        self,
        gateway: PinnedGateway,
        user_id: str | None,
        *,
        max_pinned: int = MAX_PINNED_EVENTS,
        on_change: ChangeListener | None = None,
    ):
        super().__init__(user_id, on_change)
        self._gateway = gateway
        self.max_pinned = max_pinned

    async def _fetch(self, user_id: str) -> Iterable[str]:
        return await self._gateway.get_pinned(user_id)

    async def _add(self, user_id: str, event_id: str):
        await self._gateway.add_pinned(user_id, event_id)

    async def _remove(self, user_id: str, event_id: str):
        await self._gateway.remove_pinned(user_id, event_id)

    def _check_capacity(self, limit_message: str | None):
        if len(self._ids) >= self.max_pinned:
            raise CapacityExceededError(self.max_pinned, limit_message or DEFAULT_LIMIT_MESSAGE)

    async def toggle(self, event_id: str, limit_message: str = DEFAULT_LIMIT_MESSAGE) -> ToggleResult:
        try:
            return await self._toggle(event_id, limit_message)
        except CapacityExceededError as e:
            logging.info(f"Pin of event {event_id} rejected: {e}")
            return ToggleResult(ToggleOutcome.LIMIT_REACHED, self._ids, message=e.message, error=e)
