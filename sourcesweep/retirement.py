"""Cascading retirement: log sources, then their agents, then their hosts.

Writes are strictly sequential.  A remote failure on one entity is logged
and counted, and the pipeline moves on to the next entity.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Dict, Iterable, Optional

from sourcesweep.analysis import Prober, analyze_collection_hosts, is_candidate
from sourcesweep.config import AnalysisSettings
from sourcesweep.errors import RemoteOperationError, SweepError
from sourcesweep.log import get_logger
from sourcesweep.models import (
    RETIRED,
    UNLICENSED,
    HostAnalysis,
    HostIdentifier,
    LogSource,
    RetirementRecord,
)
from sourcesweep.store import EntityKind, EntityStore

if TYPE_CHECKING:
    from sourcesweep.engine import JobRegistry

logger = get_logger("retirement")

IP_ADDRESS = "IPAddress"
# Fields the inventory rejects on a host PUT
HOST_WRITE_EXCLUDED = ("hostRoles", "hostIdentifiers")


class JobCancelled(SweepError):
    def __init__(self) -> None:
        super().__init__("Job cancelled")


def mark_retired(name: str, marker: str) -> str:
    if marker in name:
        return name
    return f"{name} {marker}" if name else marker


def unmark_retired(name: str, marker: str) -> str:
    return name.replace(f" {marker}", "").replace(marker, "").strip()


@dataclass
class RetirementContext:
    """State carried through one retirement run."""

    job_id: str
    cancel_event: threading.Event = field(default_factory=threading.Event)
    # host id -> identifiers removed by this run
    removed_identifiers: Dict[str, list[HostIdentifier]] = field(default_factory=dict)
    records: list[RetirementRecord] = field(default_factory=list)
    attempted: int = 0
    processed: int = 0
    failures: int = 0
    agents_retired: int = 0
    hosts_retired: int = 0

    def check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise JobCancelled()

    @property
    def summary(self) -> str:
        return (
            f"Retirement complete: {self.processed}/{self.attempted} log sources retired, "
            f"{self.agents_retired} agents retired, {self.hosts_retired} hosts retired, "
            f"{self.failures} failures"
        )


class RetirementPipeline:
    def __init__(
        self,
        store: EntityStore,
        settings: AnalysisSettings,
        registry: "JobRegistry",
        prober: Prober,
    ) -> None:
        self.store = store
        self.settings = settings
        self.registry = registry
        self.prober = prober

    @property
    def marker(self) -> str:
        return self.settings.retirement_marker

    # ------------------------------------------------------------------
    # Single-entity operations
    # ------------------------------------------------------------------

    def retire_log_source(self, source_id: str) -> Optional[str]:
        """Mark one log source retired and return the name written, or None if
        it already was retired.
        """
        record = self.store.get_entity(EntityKind.LOG_SOURCE, source_id)
        if record.get("recordStatus") == RETIRED:
            logger.info("Log source %s already retired, skipping", source_id)
            return None
        record["name"] = mark_retired(record.get("name") or "", self.marker)
        record["recordStatus"] = RETIRED
        self.store.put_entity(EntityKind.LOG_SOURCE, source_id, record)
        logger.info("Retired log source %s (%s)", source_id, record["name"])
        return record["name"]

    def has_active_log_sources(
        self,
        host_id: Optional[str] = None,
        system_monitor_id: Optional[str] = None,
    ) -> bool:
        """True when candidate sources remain; a failed query counts as True."""
        try:
            sources = self.store.query_log_sources(
                host_id=host_id, system_monitor_id=system_monitor_id, strict=True
            )
        except RemoteOperationError as e:
            logger.warning("Could not check remaining log sources (host=%s agent=%s): %s",
                           host_id, system_monitor_id, e)
            return True
        patterns = self.settings.excluded_log_sources
        return any(is_candidate(s, patterns) for s in sources)

    def retire_agent(self, agent_id: str) -> bool:
        """Unlicense then retire an agent. Returns False if it was already retired."""
        agent = self.store.get_entity(EntityKind.AGENT, agent_id)
        if agent.get("recordStatusName") == RETIRED:
            logger.info("Agent %s already retired", agent_id)
            return False
        agent["recordStatusName"] = UNLICENSED
        self.store.put_entity(EntityKind.AGENT, agent_id, agent)
        logger.info("Unlicensed agent %s", agent_id)

        agent["recordStatusName"] = RETIRED
        agent["licenseType"] = "None"
        self.store.put_entity(EntityKind.AGENT, agent_id, agent)
        logger.info("Retired agent %s", agent_id)
        return True

    def remove_host_identifiers(self, host_id: str) -> list[HostIdentifier]:
        """Remove the host's live IP identifiers and return exactly those."""
        host = self.store.get_entity(EntityKind.HOST, host_id)
        removed: list[HostIdentifier] = []
        for item in host.get("hostIdentifiers") or []:
            if not isinstance(item, dict) or item.get("type") != IP_ADDRESS:
                continue
            if item.get("dateRetired") is not None or not item.get("value"):
                continue
            identifier = HostIdentifier(type=IP_ADDRESS, value=str(item["value"]))
            if identifier not in removed:
                removed.append(identifier)
        if not removed:
            logger.debug("Host %s has no active IP identifiers", host_id)
            return []
        self.store.remove_identifiers(host_id, removed)
        logger.info("Removed %d IP identifiers from host %s", len(removed), host_id)
        return removed

    def retire_host(self, host_id: str) -> bool:
        host = self.store.get_entity(EntityKind.HOST, host_id)
        if host.get("recordStatusName") == RETIRED:
            logger.info("Host %s already retired, skipping", host_id)
            return False
        host["name"] = mark_retired(host.get("name") or "", self.marker)
        host["recordStatusName"] = RETIRED
        for key in HOST_WRITE_EXCLUDED:
            host.pop(key, None)
        self.store.put_entity(EntityKind.HOST, host_id, host)
        logger.info("Retired host %s (%s)", host_id, host["name"])
        return True

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _progress(self, ctx: RetirementContext, progress: int, message: str) -> None:
        def apply(job):
            job.progress = progress
            job.message = message
            job.retirement_records = list(ctx.records)
        self.registry.mutate(ctx.job_id, apply)

    def _retire_agents(self, ctx: RetirementContext, agent_ids: Iterable[str]) -> None:
        for agent_id in agent_ids:
            ctx.check_cancelled()
            if self.has_active_log_sources(system_monitor_id=agent_id):
                logger.info("Agent %s still owns active log sources, keeping it", agent_id)
                continue
            try:
                if self.retire_agent(agent_id):
                    ctx.agents_retired += 1
            except RemoteOperationError as e:
                ctx.failures += 1
                logger.error("Failed to retire agent %s: %s", agent_id, e)

    def _retire_sources(self, ctx: RetirementContext, host: HostAnalysis) -> list[LogSource]:
        retired = []
        for source in host.log_sources:
            ctx.check_cancelled()
            ctx.attempted += 1
            if source.record_status == RETIRED:
                continue
            try:
                retired_name = self.retire_log_source(source.id)
            except RemoteOperationError as e:
                ctx.failures += 1
                logger.error("Failed to retire log source %s on %s: %s",
                             source.id, host.host_name, e)
                continue
            if retired_name is None:
                continue
            ctx.processed += 1
            retired.append(source)
            ctx.records.append(RetirementRecord(
                log_source_id=source.id,
                host_id=host.host_id,
                host_name=host.host_name,
                original_name=source.name,
                retired_name=retired_name,
                original_status=source.record_status,
                timestamp=datetime.now(timezone.utc),
            ))
        return retired

    def _retire_host(self, ctx: RetirementContext, host: HostAnalysis) -> None:
        ctx.check_cancelled()
        if self.has_active_log_sources(host_id=host.host_id):
            logger.info("Host %s still has active log sources, keeping it", host.host_name)
            return

        agent_ids = dict.fromkeys(
            s.system_monitor_id for s in host.log_sources if s.system_monitor_id
        )
        self._retire_agents(ctx, agent_ids)

        ctx.check_cancelled()
        try:
            ctx.removed_identifiers[host.host_id] = self.remove_host_identifiers(host.host_id)
        except RemoteOperationError as e:
            ctx.failures += 1
            logger.error("Failed to remove identifiers from host %s: %s", host.host_name, e)

        ctx.check_cancelled()
        try:
            if self.retire_host(host.host_id):
                ctx.hosts_retired += 1
        except RemoteOperationError as e:
            ctx.failures += 1
            logger.error("Failed to retire host %s: %s", host.host_name, e)

    def run(self, ctx: RetirementContext, hosts: list[HostAnalysis]) -> RetirementContext:
        total = max(len(hosts), 1)

        retired: list[LogSource] = []
        for i, host in enumerate(hosts):
            self._progress(ctx, 5 + 40 * i // total,
                           f"Retiring log sources on {host.host_name} ({i + 1}/{len(hosts)})")
            retired.extend(self._retire_sources(ctx, host))

        self._progress(ctx, 50, "Checking collection agents...")
        self._retire_agents(
            ctx, dict.fromkeys(s.system_monitor_id for s in retired if s.system_monitor_id)
        )

        for i, host in enumerate(hosts):
            self._progress(ctx, 60 + 30 * i // total,
                           f"Retiring host {host.host_name} ({i + 1}/{len(hosts)})")
            self._retire_host(ctx, host)

        ctx.check_cancelled()
        self._progress(ctx, 95, "Re-analyzing collection agents...")
        try:
            sources = self.store.list_log_sources()
        except RemoteOperationError as e:
            ctx.failures += 1
            logger.warning("Collection agent re-analysis failed: %s", e)
        else:
            agents = analyze_collection_hosts(sources, self.settings.excluded_log_sources,
                                              self.prober)
            self.registry.mutate(
                ctx.job_id, lambda job: setattr(job, "collection_host_analysis", agents)
            )

        logger.info("Job %s: %s", ctx.job_id, ctx.summary)
        return ctx
