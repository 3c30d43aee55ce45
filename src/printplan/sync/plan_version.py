"""Plan versioning between the local cache and the canonical plan store.

A plan is published as one snapshot: the store replaces the superseded cycles
and bumps its version token in a single operation. The local token only moves
after the store confirms success, and a stale cache is always replaced whole.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field, replace
from typing import Iterable, Literal, Mapping, Protocol, Sequence

from printplan.core.events import DecisionLog
from printplan.core.models import PlannedCycle
from printplan.sync.local_cache import LocalPlanCache

logger = logging.getLogger(__name__)

SyncState = Literal["unknown", "synced", "stale"]
STATE_UNKNOWN: SyncState = "unknown"
STATE_SYNCED: SyncState = "synced"
STATE_STALE: SyncState = "stale"

ORPHAN_ERROR = "Deferred: projects not yet hydrated"
PUBLISH_IN_PROGRESS = "publish_in_progress"


@dataclass(frozen=True)
class PublishRequest:
    workspace_id: str
    cycles: list[PlannedCycle]
    prior_version: str | None
    keep_cycle_ids: frozenset[str] = frozenset()
    reason: str = "manual_replan"
    scope: str = "from_now"


@dataclass(frozen=True)
class StorePublishResponse:
    success: bool
    plan_version: str | None
    cycles_created: int = 0
    cycles_deleted: int = 0
    error: str | None = None


class PlanStore(Protocol):
    """Canonical plan store. Every method is awaited by the caller."""

    async def get_active_plan_version(self, workspace_id: str) -> str | None: ...

    async def publish_plan(self, request: PublishRequest) -> StorePublishResponse: ...

    async def fetch_cycles(self, workspace_id: str, plan_version: str) -> list[PlannedCycle]: ...


@dataclass(frozen=True)
class PublishPlanResult:
    success: bool
    plan_version: str | None
    cycles_created: int
    cycles_deleted: int
    error: str | None = None
    orphan_project_ids: list[str] = field(default_factory=list)

    @property
    def deferred(self) -> bool:
        return bool(self.orphan_project_ids)


@dataclass(frozen=True)
class PlanUpdateResult:
    updated: bool
    version: str | None
    cycles_loaded: int
    error: str | None = None


def is_durable_ref(value: str | None) -> bool:
    if not value:
        return False
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


def resolve_project_ref(project_id: str, refs: Mapping[str, str | None]) -> str | None:
    """Durable store id for a local project id, or None when not created yet."""
    mapped = refs.get(project_id)
    if is_durable_ref(mapped):
        return str(mapped)
    if is_durable_ref(project_id):
        return project_id
    return None


def _failure(error: str | None, orphans: list[str] | None = None) -> PublishPlanResult:
    return PublishPlanResult(
        success=False,
        plan_version=None,
        cycles_created=0,
        cycles_deleted=0,
        error=error,
        orphan_project_ids=orphans or [],
    )


class PlanVersionService:
    def __init__(
        self,
        store: PlanStore,
        cache: LocalPlanCache,
        workspace_id: str,
        log: DecisionLog | None = None,
    ):
        self.store = store
        self.cache = cache
        self.workspace_id = workspace_id
        self.log = log if log is not None else DecisionLog()
        self._state: SyncState = STATE_UNKNOWN
        # Single writer for the local token: publish and rehydrate never interleave.
        self._writer = asyncio.Lock()

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def busy(self) -> bool:
        return self._writer.locked()

    async def publish_plan(
        self,
        cycles: Sequence[PlannedCycle],
        *,
        project_refs: Mapping[str, str | None] | None = None,
        keep_cycle_ids: Iterable[str] = (),
        reason: str = "manual_replan",
        scope: str = "from_now",
    ) -> PublishPlanResult:
        if self._writer.locked():
            self.log.emit("deferral", PUBLISH_IN_PROGRESS, "Publish rejected: another publish is outstanding")
            return _failure(PUBLISH_IN_PROGRESS)

        async with self._writer:
            return await self._publish(
                cycles,
                project_refs=project_refs or {},
                keep_cycle_ids=frozenset(keep_cycle_ids),
                reason=reason,
                scope=scope,
            )

    async def _publish(
        self,
        cycles: Sequence[PlannedCycle],
        *,
        project_refs: Mapping[str, str | None],
        keep_cycle_ids: frozenset[str],
        reason: str,
        scope: str,
    ) -> PublishPlanResult:
        syncable = [c for c in cycles if c.is_syncable]

        orphans: list[str] = []
        outgoing: list[PlannedCycle] = []
        for cycle in syncable:
            ref = resolve_project_ref(cycle.project_id, project_refs)
            if ref is None:
                if cycle.project_id not in orphans:
                    orphans.append(cycle.project_id)
                continue
            outgoing.append(replace(cycle, project_id=ref))

        if orphans:
            self.log.emit(
                "deferral",
                "orphan_project_reference",
                f"{ORPHAN_ERROR}: {', '.join(orphans)}",
                orphan_project_ids=orphans,
            )
            return _failure(ORPHAN_ERROR, orphans)

        prior = self.cache.get_plan_version()
        request = PublishRequest(
            workspace_id=self.workspace_id,
            cycles=outgoing,
            prior_version=prior,
            keep_cycle_ids=keep_cycle_ids,
            reason=reason,
            scope=scope,
        )
        logger.info(
            "Publishing plan for %s: %d cycle(s), %d kept, prior version %s",
            self.workspace_id,
            len(outgoing),
            len(keep_cycle_ids),
            prior,
        )

        try:
            response = await self.store.publish_plan(request)
        except Exception as exc:
            logger.exception("Plan publish failed for %s", self.workspace_id)
            self.log.emit("rollback", "publish_failed", str(exc))
            return _failure(str(exc))

        if not response.success or not response.plan_version:
            self.log.emit("rollback", "publish_rejected", response.error or "store rejected publish")
            return PublishPlanResult(
                success=False,
                plan_version=response.plan_version,
                cycles_created=response.cycles_created,
                cycles_deleted=response.cycles_deleted,
                error=response.error,
            )

        version = response.plan_version
        self.cache.replace_plan(await self._published_snapshot(version, outgoing, keep_cycle_ids), version)
        self._state = STATE_SYNCED
        logger.info("Plan %s published for %s", version, self.workspace_id)
        return PublishPlanResult(
            success=True,
            plan_version=version,
            cycles_created=response.cycles_created,
            cycles_deleted=response.cycles_deleted,
        )

    async def _published_snapshot(
        self,
        version: str,
        outgoing: Sequence[PlannedCycle],
        keep_cycle_ids: frozenset[str],
    ) -> list[PlannedCycle]:
        """Every cycle the store now tags with `version`, kept cycles included.

        When the store cannot be read back, the outgoing cycles plus the locally
        cached kept cycles are re-tagged instead.
        """
        try:
            return await self.store.fetch_cycles(self.workspace_id, version)
        except Exception:
            logger.exception("Could not read back plan %s for %s; rebuilding it locally", version, self.workspace_id)

        sent = {c.id for c in outgoing}
        kept = [c for c in self.cache.get_cycles() if c.id in keep_cycle_ids and c.id not in sent]
        return [replace(c, plan_version=version) for c in [*outgoing, *kept]]

    async def check_for_plan_update(self) -> PlanUpdateResult:
        local = self.cache.get_plan_version()
        if self._writer.locked():
            return PlanUpdateResult(updated=False, version=local, cycles_loaded=0, error=PUBLISH_IN_PROGRESS)

        async with self._writer:
            try:
                remote = await self.store.get_active_plan_version(self.workspace_id)
            except Exception as exc:
                logger.exception("Could not read active plan version for %s", self.workspace_id)
                return PlanUpdateResult(updated=False, version=None, cycles_loaded=0, error=str(exc))

            if not remote:
                return PlanUpdateResult(updated=False, version=None, cycles_loaded=0)

            if local == remote:
                self._state = STATE_SYNCED
                return PlanUpdateResult(updated=False, version=local, cycles_loaded=0)

            self._state = STATE_STALE
            try:
                cycles = await self.store.fetch_cycles(self.workspace_id, remote)
            except Exception as exc:
                logger.exception("Could not fetch plan %s for %s", remote, self.workspace_id)
                return PlanUpdateResult(updated=False, version=None, cycles_loaded=0, error=str(exc))

            self.cache.replace_plan(cycles, remote)
            self._state = STATE_SYNCED
            logger.info("Local plan replaced with version %s (%d cycles)", remote, len(cycles))
            return PlanUpdateResult(updated=True, version=remote, cycles_loaded=len(cycles))

    async def is_plan_version_current(self) -> bool:
        remote = await self.store.get_active_plan_version(self.workspace_id)
        if not remote:
            return True
        current = self.cache.get_plan_version() == remote
        if not self._writer.locked():
            self._state = STATE_SYNCED if current else STATE_STALE
        return current
