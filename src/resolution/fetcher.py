"""Concurrent catalog fetches feeding the solver loop.

Worker tasks take requests from a queue, run the (synchronous) catalog call
in a thread, and post ``(key, outcome)`` on a completion queue. Only the
solver drains the completion queue, so every decision is made by one logical
thread no matter in which order fetches finish.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Set, Tuple, Union

from packaging.version import Version

from constants import Constants
from common.logging_utils import extra_context, is_debug_enabled
from registry.catalog import SourceCatalog
from versioning.models import CandidateVersion, Source

logger = logging.getLogger(__name__)

FetchKey = Tuple[str, ...]


def versions_key(name: str) -> FetchKey:
    return ("versions", name)


def metadata_key(name: str, target: Union[Version, Source]) -> FetchKey:
    if isinstance(target, Version):
        return ("metadata", name, str(target))
    return ("direct", name, target.kind.value, target.locator())


class FetchPool:
    """Bounded pool of fetch workers for one resolve call.

    Use as an async context manager; leaving the context cancels the
    workers and drops in-flight results.
    """

    def __init__(self, catalog: SourceCatalog, concurrency: Optional[int] = None):
        self.catalog = catalog
        self.concurrency = max(1, concurrency or Constants.FETCH_CONCURRENCY)
        self._requests: "asyncio.Queue[Tuple[FetchKey, Any]]" = asyncio.Queue()
        self._completed: "asyncio.Queue[Tuple[FetchKey, Any]]" = asyncio.Queue()
        self._results: Dict[FetchKey, Any] = {}
        self._requested: Set[FetchKey] = set()
        self._workers: List[asyncio.Task] = []

    async def __aenter__(self) -> "FetchPool":
        self._workers = [
            asyncio.create_task(self._worker(i)) for i in range(self.concurrency)
        ]
        return self

    async def __aexit__(self, *exc: Any) -> None:
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

    def request_versions(self, name: str) -> None:
        self._submit(versions_key(name), (self.catalog.list_versions, name))

    def request_metadata(self, name: str, target: Union[Version, Source]) -> None:
        self._submit(metadata_key(name, target), (self.catalog.fetch_metadata, name, target))

    async def versions(self, name: str) -> List[str]:
        self.request_versions(name)
        return await self._wait(versions_key(name))

    async def metadata(self, name: str, target: Union[Version, Source]) -> CandidateVersion:
        self.request_metadata(name, target)
        return await self._wait(metadata_key(name, target))

    def _submit(self, key: FetchKey, call: Tuple[Any, ...]) -> None:
        if key in self._requested:
            return
        self._requested.add(key)
        self._requests.put_nowait((key, call))

    async def _wait(self, key: FetchKey) -> Any:
        while key not in self._results:
            done_key, outcome = await self._completed.get()
            self._results[done_key] = outcome
        outcome = self._results[key]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def _worker(self, index: int) -> None:
        while True:
            key, call = await self._requests.get()
            func, *args = call
            try:
                outcome = await asyncio.to_thread(func, *args)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pylint: disable=broad-exception-caught
                # Handed to the solver, which re-raises or tries the next candidate.
                outcome = exc
            if is_debug_enabled(logger):
                logger.debug(
                    "Fetch completed",
                    extra=extra_context(
                        event="fetch_done",
                        component="fetcher",
                        action=key[0],
                        target="/".join(key[1:]),
                        worker=index,
                        outcome="error" if isinstance(outcome, Exception) else "success",
                    )
                )
            await self._completed.put((key, outcome))
