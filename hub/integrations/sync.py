"""
Integration Hub Sync Orchestrator.

Fan-out / fan-in over independent sync sub-tasks:
- every sub-task runs concurrently and is awaited to completion
- outcomes settle into Ok / Err, never short-circuiting on the first error
- some succeed -> success=True, failed sub-tasks listed in ``errors``
- all fail     -> SyncError carrying the failed SyncResult
- no sub-tasks -> success=False

The orchestrator holds no locks; adapters synchronise their own caches.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Generic, Optional, Sequence, TypeVar, Union
import asyncio
import logging

from hub.errors import SyncError
from hub.integrations.models import ProviderIdentity, SyncResult, utcnow

if TYPE_CHECKING:
    from hub.integrations.registry import IntegrationRegistry

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    error: Exception

    @property
    def ok(self) -> bool:
        return False


Settled = Union[Ok[T], Err]


@dataclass(frozen=True)
class SubTaskOutcome:
    """What one successful sub-task contributes to the aggregate."""
    processed: int = 0
    skipped: int = 0  # fetched but rejected by validation
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SubTask:
    name: str
    run: Callable[[], Awaitable[SubTaskOutcome]]


async def settle_all(aws: Sequence[Awaitable[T]]) -> list[Settled[T]]:
    """
    Await everything, converting each outcome to Ok / Err.

    Only ``Exception`` subclasses are settled; cancellation and other
    BaseExceptions propagate.
    """
    results = await asyncio.gather(*aws, return_exceptions=True)
    settled: list[Settled[T]] = []
    for result in results:
        if isinstance(result, Exception):
            settled.append(Err(result))
        elif isinstance(result, BaseException):
            raise result
        else:
            settled.append(Ok(result))
    return settled


class SyncOrchestrator:
    """Runs sync fan-outs and aggregates them into one SyncResult."""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock

    async def sync_all(
        self,
        identity: ProviderIdentity,
        sub_tasks: Sequence[SubTask],
    ) -> SyncResult:
        """
        Run every sub-task concurrently and aggregate.

        ``metadata["last_sync_time"]`` is the fan-out start (the stamp
        adapters compare for last-writer-wins); ``metadata["synced_at"]``
        is when it settled.
        """
        started = self._clock()
        if not sub_tasks:
            # success requires at least one succeeded sub-task
            logger.warning("Sync for %s has no sub-tasks", identity)
            return SyncResult(
                success=False,
                errors=("no sync sub-tasks to run",),
                metadata={
                    "provider": identity.provider,
                    "last_sync_time": started,
                    "synced_at": started,
                    "sub_tasks": {},
                },
            )

        settled = await settle_all([task.run() for task in sub_tasks])

        processed = skipped = 0
        errors: list[str] = []
        failures: list[Exception] = []
        statuses: dict[str, str] = {}
        details: dict[str, Any] = {}

        for task, outcome in zip(sub_tasks, settled):
            if isinstance(outcome, Ok):
                processed += outcome.value.processed
                skipped += outcome.value.skipped
                statuses[task.name] = "ok"
                if outcome.value.metadata:
                    details[task.name] = outcome.value.metadata
            else:
                errors.append(f"{task.name}: {outcome.error}")
                failures.append(outcome.error)
                statuses[task.name] = "failed"

        all_failed = len(failures) == len(sub_tasks)
        result = SyncResult(
            success=not all_failed,
            items_processed=processed,
            items_skipped=skipped,
            errors=tuple(errors),
            metadata={
                "provider": identity.provider,
                "last_sync_time": started,
                "synced_at": self._clock(),
                "sub_tasks": statuses,
                **details,
            },
        )

        if all_failed:
            logger.warning("Sync failed for %s: all %d sub-tasks failed", identity, len(sub_tasks))
            raise SyncError(
                f"All {len(sub_tasks)} sync sub-tasks failed for {identity}: {errors[0]}",
                result=result,
                provider=identity.provider,
            ) from failures[0]

        if errors:
            logger.warning(
                "Partial sync for %s: %d/%d sub-tasks failed",
                identity, len(errors), len(sub_tasks),
            )
        else:
            logger.info("Synced %s: %d processed, %d skipped", identity, processed, skipped)
        return result

    async def sync_user(
        self,
        user_id: str,
        registry: IntegrationRegistry,
        last_sync_time: Optional[datetime] = None,
    ) -> dict[str, Settled[SyncResult]]:
        """
        Sync every connected integration of one user concurrently.

        Each integration syncs incrementally from its own last sync time
        unless ``last_sync_time`` is given.
        """
        integrations = registry.for_user(user_id)
        settled = await settle_all([
            integration.sync_data(last_sync_time or integration.get_last_sync_time())
            for integration in integrations
        ])
        return {
            integration.provider: outcome
            for integration, outcome in zip(integrations, settled)
        }
