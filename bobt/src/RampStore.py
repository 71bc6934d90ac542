"""RampStore: repository for ramp requests and quotes.

:class:`RampRepository` is the interface the state machine depends on.
:class:`InMemoryRampStore` keeps everything in dicts and serializes writes
per request id with one ``asyncio.Lock`` each, so different requests never
contend. A durable backend must provide the same compare-and-swap semantics
for :meth:`RampRepository.update_if_status`.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, Iterable

from .errors import RequestNotFound, TransitionRejected
from .RampTypes import RampQuote, RampRequest, RampStatus

logger = logging.getLogger(__name__)


class RampRepository(ABC):
    """Storage interface for requests and quotes."""

    @abstractmethod
    async def create(self, request: RampRequest) -> RampRequest:
        """Store a new request.

        :raises ValueError: If the id is already taken.
        """

    @abstractmethod
    async def get(self, request_id: str) -> RampRequest | None:
        """Get a snapshot of a request, or None."""

    @abstractmethod
    async def update_if_status(
        self,
        request_id: str,
        expected: RampStatus | Iterable[RampStatus],
        new_status: RampStatus | None,
        now_ms: int,
        **changes: Any,
    ) -> RampRequest:
        """Atomically apply a change if the request is in an expected status.

        :param request_id: Request to update.
        :param expected: Status (or statuses) the request must currently have.
        :param new_status: Status to write, or None to keep the current one.
        :param now_ms: Timestamp written to ``updated_at``.
        :param changes: Other fields to set.
        :returns: Snapshot of the updated request.
        :raises RequestNotFound: If the id is unknown.
        :raises TransitionRejected: If the current status is not expected.
        """

    @abstractmethod
    async def list_by_user(self, user_address: str) -> list[RampRequest]:
        """Requests of one user, newest first."""

    @abstractmethod
    async def list_by_status(self, *statuses: RampStatus) -> list[RampRequest]:
        """Requests in any of the given statuses, oldest first."""

    @abstractmethod
    async def list_all(self) -> list[RampRequest]:
        """Every stored request."""

    @abstractmethod
    async def create_quote(self, quote: RampQuote) -> RampQuote:
        pass

    @abstractmethod
    async def get_quote(self, quote_id: str) -> RampQuote | None:
        pass

    @abstractmethod
    async def delete_quote(self, quote_id: str) -> bool:
        pass

    @abstractmethod
    async def cleanup_expired_quotes(self, now_ms: int) -> int:
        """Delete quotes past ``valid_until``.

        :returns: Number of quotes removed.
        """


class InMemoryRampStore(RampRepository):
    """Process-local repository. Contents are lost on restart."""

    def __init__(self) -> None:
        self._requests: dict[str, RampRequest] = {}
        self._quotes: dict[str, RampQuote] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def create(self, request: RampRequest) -> RampRequest:
        async with self._locks[request.id]:
            if request.id in self._requests:
                raise ValueError(f"Request {request.id} already exists")
            stored = copy.deepcopy(request)
            if not stored.history:
                stored.history.append((stored.status, stored.created_at))
            self._requests[request.id] = stored
            return copy.deepcopy(stored)

    async def get(self, request_id: str) -> RampRequest | None:
        request = self._requests.get(request_id)
        return copy.deepcopy(request) if request is not None else None

    async def update_if_status(
        self,
        request_id: str,
        expected: RampStatus | Iterable[RampStatus],
        new_status: RampStatus | None,
        now_ms: int,
        **changes: Any,
    ) -> RampRequest:
        allowed = {expected} if isinstance(expected, RampStatus) else set(expected)
        async with self._locks[request_id]:
            request = self._requests.get(request_id)
            if request is None:
                raise RequestNotFound(request_id)
            if request.status not in allowed:
                attempted = new_status.value if new_status else "update"
                raise TransitionRejected(request_id, request.status.value, attempted)

            updated = copy.deepcopy(request)
            for name, value in changes.items():
                if not hasattr(updated, name):
                    raise AttributeError(f"RampRequest has no field {name!r}")
                setattr(updated, name, value)
            if new_status is not None and new_status is not request.status:
                updated.status = new_status
                updated.history.append((new_status, now_ms))
            updated.updated_at = now_ms
            self._requests[request_id] = updated
            return copy.deepcopy(updated)

    async def list_by_user(self, user_address: str) -> list[RampRequest]:
        matches = [r for r in self._requests.values() if r.user_address == user_address]
        matches.sort(key=lambda r: r.created_at, reverse=True)
        return [copy.deepcopy(r) for r in matches]

    async def list_by_status(self, *statuses: RampStatus) -> list[RampRequest]:
        wanted = set(statuses)
        matches = [r for r in self._requests.values() if r.status in wanted]
        matches.sort(key=lambda r: r.created_at)
        return [copy.deepcopy(r) for r in matches]

    async def list_all(self) -> list[RampRequest]:
        return [copy.deepcopy(r) for r in self._requests.values()]

    async def create_quote(self, quote: RampQuote) -> RampQuote:
        self._quotes[quote.id] = quote
        return quote

    async def get_quote(self, quote_id: str) -> RampQuote | None:
        return self._quotes.get(quote_id)

    async def delete_quote(self, quote_id: str) -> bool:
        return self._quotes.pop(quote_id, None) is not None

    async def cleanup_expired_quotes(self, now_ms: int) -> int:
        expired = [qid for qid, q in self._quotes.items() if q.is_expired(now_ms)]
        for quote_id in expired:
            del self._quotes[quote_id]
        if expired:
            logger.debug(f"Removed {len(expired)} expired quotes")
        return len(expired)
