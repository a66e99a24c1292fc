"""Checksum-verified rollback journal.

Each record is one JSON file holding the pre-change state of every entity a
retirement run touched.  The checksum covers the canonical serialisation of
the record with ``checksum`` set to the empty string.
"""
from __future__ import annotations

import hashlib
import json
import os
import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

from pydantic import ValidationError as ModelValidationError

from sourcesweep.config import RollbackSettings
from sourcesweep.errors import EntityNotFoundError, IntegrityError, RemoteOperationError
from sourcesweep.log import get_logger
from sourcesweep.models import (
    EntityOutcome,
    HostAnalysis,
    HostChange,
    HostIdentifier,
    LogSourceChange,
    RollbackData,
    RollbackOutcome,
    RollbackSummary,
    SystemMonitorChange,
)
from sourcesweep.retirement import IP_ADDRESS, unmark_retired
from sourcesweep.store import EntityKind, EntityStore

logger = get_logger("rollback")

OPERATION_RETIREMENT = "retirement"
# Server-managed fields the inventory rejects on a restoring host PUT
HOST_RESTORE_EXCLUDED = (
    "hostIdentifiers",
    "hostRoles",
    "id",
    "createdDate",
    "lastUpdatedDate",
    "lastUpdatedBy",
    "createdBy",
    "recordStatus",
)


def canonical_bytes(document: Dict[str, Any]) -> bytes:
    return json.dumps(
        document, sort_keys=True, separators=(",", ":"), ensure_ascii=False
    ).encode("utf-8")


class RollbackJournal:
    def __init__(self, settings: RollbackSettings, marker: str = "Retired by SourceSweep") -> None:
        self.settings = settings
        self.marker = marker
        self.directory = Path(settings.backup_location)
        # fail fast on an unknown algorithm
        hashlib.new(settings.checksum_algorithm)
        self._index: Dict[str, Tuple[RollbackData, Path]] = {}
        self._lock = threading.Lock()

    @property
    def auto_snapshot(self) -> bool:
        return self.settings.enabled and self.settings.auto_backup

    def __len__(self) -> int:
        with self._lock:
            return len(self._index)

    # ------------------------------------------------------------------
    # Checksums and files
    # ------------------------------------------------------------------

    def compute_checksum(self, document: Dict[str, Any]) -> str:
        unsealed = dict(document, checksum="")
        return hashlib.new(self.settings.checksum_algorithm, canonical_bytes(unsealed)).hexdigest()

    def seal(self, data: RollbackData) -> Tuple[RollbackData, bytes]:
        """Return the record with its checksum filled in, plus the file bytes."""
        document = data.model_dump(mode="json")
        document["checksum"] = self.compute_checksum(document)
        return data.model_copy(update={"checksum": document["checksum"]}), canonical_bytes(document)

    def read(self, path: Path) -> RollbackData:
        """Load and verify one record file.

        Raises IntegrityError when the stored checksum disagrees with the
        content, ValueError when the file is not a rollback record.
        """
        document = json.loads(path.read_bytes())
        if not isinstance(document, dict):
            raise ValueError(f"{path.name} is not a rollback record")
        stored = document.get("checksum", "")
        if stored != self.compute_checksum(document):
            raise IntegrityError(f"checksum mismatch in {path.name}")
        return RollbackData.model_validate(document)

    @staticmethod
    def filename(data: RollbackData) -> str:
        return f"rollback_{data.timestamp:%Y%m%d_%H%M%S_%f}_{data.operation_type}.json"

    def load(self) -> int:
        """Index every valid record in the backup directory."""
        if not self.directory.is_dir():
            logger.debug("Rollback directory %s does not exist yet", self.directory)
            return 0
        loaded: Dict[str, Tuple[RollbackData, Path]] = {}
        for path in sorted(self.directory.glob("rollback_*.json")):
            try:
                data = self.read(path)
            except IntegrityError as e:
                logger.warning("Ignoring corrupt rollback record: %s", e)
                continue
            except (OSError, ValueError, ModelValidationError) as e:
                logger.warning("Ignoring unreadable rollback file %s: %s", path.name, e)
                continue
            loaded[data.id] = (data, path)
        with self._lock:
            self._index.update(loaded)
        logger.info("Loaded %d rollback records from %s", len(loaded), self.directory)
        return len(loaded)

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def _new_id(self) -> str:
        base = f"rollback_{time.time_ns() // 1_000_000}"
        candidate, n = base, 1
        with self._lock:
            while candidate in self._index:
                n += 1
                candidate = f"{base}_{n}"
        return candidate

    def save(self, data: RollbackData) -> RollbackData:
        sealed, payload = self.seal(data)
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.directory / self.filename(sealed)
        tmp = path.with_suffix(".tmp")
        tmp.write_bytes(payload)
        os.replace(tmp, path)
        with self._lock:
            self._index[sealed.id] = (sealed, path)
        logger.info("Saved rollback record %s (%s)", sealed.id, path.name)
        self.prune()
        return sealed

    def get(self, rollback_id: str) -> RollbackData:
        with self._lock:
            entry = self._index.get(rollback_id)
        if entry is None:
            raise EntityNotFoundError(f"Rollback {rollback_id} not found")
        return entry[0]

    def list(self) -> list[RollbackSummary]:
        with self._lock:
            records = [data for data, _ in self._index.values()]
        records.sort(key=lambda d: d.timestamp, reverse=True)
        return [
            RollbackSummary(
                id=d.id,
                timestamp=d.timestamp,
                operation=d.operation_type,
                description=d.description,
                job_id=d.job_id,
                log_sources=len(d.log_source_changes),
                hosts=len(d.host_changes),
                system_monitors=len(d.system_monitor_changes),
            )
            for d in records
        ]

    def delete(self, rollback_id: str) -> None:
        """Remove the record file and its index entry together."""
        with self._lock:
            entry = self._index.get(rollback_id)
            if entry is None:
                raise EntityNotFoundError(f"Rollback {rollback_id} not found")
            entry[1].unlink(missing_ok=True)
            del self._index[rollback_id]
        logger.info("Deleted rollback record %s", rollback_id)

    def prune(self) -> int:
        """Drop records past ``retention_days`` and beyond ``max_rollback_points``."""
        with self._lock:
            records = sorted((d for d, _ in self._index.values()),
                             key=lambda d: d.timestamp, reverse=True)
        expired = set()
        if self.settings.retention_days > 0:
            cutoff = datetime.now(timezone.utc) - timedelta(days=self.settings.retention_days)
            expired.update(d.id for d in records if d.timestamp < cutoff)
        if self.settings.max_rollback_points > 0:
            expired.update(d.id for d in records[self.settings.max_rollback_points:])
        for rollback_id in expired:
            try:
                self.delete(rollback_id)
            except EntityNotFoundError:
                continue
        if expired:
            logger.info("Pruned %d rollback records", len(expired))
        return len(expired)

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def build_snapshot(
        self,
        store: EntityStore,
        job_id: str,
        hosts: Iterable[HostAnalysis],
    ) -> RollbackData:
        """Capture the current state of everything a retirement will touch.

        Host fetch failures propagate: a run that cannot be snapshotted must
        not start.  Agents are best effort.
        """
        hosts = list(hosts)
        source_changes: list[LogSourceChange] = []
        host_changes: list[HostChange] = []
        agents: Dict[str, str] = {}

        for host in hosts:
            for source in host.log_sources:
                source_changes.append(LogSourceChange(
                    log_source_id=source.id,
                    host_id=host.host_id,
                    host_name=host.host_name,
                    original_name=source.name,
                    original_status=source.record_status,
                    system_monitor_id=source.system_monitor_id,
                ))
                if source.system_monitor_id:
                    agents.setdefault(source.system_monitor_id, source.system_monitor_name)

            record = store.get_entity(EntityKind.HOST, host.host_id)
            identifiers = [
                HostIdentifier(type=str(i.get("type", "")), value=str(i.get("value", "")))
                for i in record.get("hostIdentifiers") or []
                if isinstance(i, dict)
            ]
            host_changes.append(HostChange(
                host_id=host.host_id,
                host_name=host.host_name,
                original_name=record.get("name") or host.host_name,
                original_status=record.get("recordStatusName") or "",
                original_identifiers=identifiers,
            ))

        monitor_changes: list[SystemMonitorChange] = []
        for agent_id, agent_name in agents.items():
            try:
                agent = store.get_entity(EntityKind.AGENT, agent_id)
            except RemoteOperationError as e:
                logger.warning("Could not snapshot agent %s: %s", agent_id, e)
                continue
            monitor_changes.append(SystemMonitorChange(
                system_monitor_id=agent_id,
                system_monitor_name=agent.get("name") or agent_name,
                original_status=agent.get("recordStatusName") or "",
                original_license_type=agent.get("licenseType") or "",
            ))

        return RollbackData(
            id=self._new_id(),
            timestamp=datetime.now(timezone.utc),
            operation_type=OPERATION_RETIREMENT,
            description=f"Retirement of {len(hosts)} hosts with {len(source_changes)} log sources",
            job_id=job_id,
            log_source_changes=source_changes,
            host_changes=host_changes,
            system_monitor_changes=monitor_changes,
        )

    def snapshot(self, store: EntityStore, job_id: str, hosts: Iterable[HostAnalysis]) -> RollbackData:
        return self.save(self.build_snapshot(store, job_id, hosts))

    def finalize(
        self,
        preliminary: RollbackData,
        removed_identifiers: Dict[str, list[HostIdentifier]],
    ) -> RollbackData:
        """Replace the pre-run record with one listing the removed identifiers."""
        if not any(removed_identifiers.values()):
            return preliminary
        final = preliminary.model_copy(update={
            "id": self._new_id(),
            "timestamp": datetime.now(timezone.utc),
            "checksum": "",
            "host_changes": [
                change.model_copy(update={
                    "retired_identifiers": list(removed_identifiers.get(change.host_id, [])),
                })
                for change in preliminary.host_changes
            ],
        })
        final = self.save(final)
        try:
            self.delete(preliminary.id)
        except EntityNotFoundError:
            # already pruned
            pass
        return final

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    def _restore_log_source(self, store: EntityStore, change: LogSourceChange) -> None:
        record = store.get_entity(EntityKind.LOG_SOURCE, change.log_source_id)
        record["name"] = unmark_retired(change.original_name, self.marker)
        record["recordStatus"] = change.original_status
        store.put_entity(EntityKind.LOG_SOURCE, change.log_source_id, record)

    def _restore_host(self, store: EntityStore, change: HostChange) -> None:
        record = store.get_entity(EntityKind.HOST, change.host_id)
        record["name"] = unmark_retired(change.original_name, self.marker)
        record["recordStatusName"] = change.original_status
        for key in HOST_RESTORE_EXCLUDED:
            record.pop(key, None)
        store.put_entity(EntityKind.HOST, change.host_id, record)
        identifiers = [i for i in change.retired_identifiers if i.type == IP_ADDRESS]
        if identifiers:
            store.add_identifiers(change.host_id, identifiers)

    def _restore_agent(self, store: EntityStore, change: SystemMonitorChange) -> None:
        record = store.get_entity(EntityKind.AGENT, change.system_monitor_id)
        record["recordStatusName"] = change.original_status
        if change.original_license_type:
            record["licenseType"] = change.original_license_type
        store.put_entity(EntityKind.AGENT, change.system_monitor_id, record)

    def execute(
        self,
        rollback_id: str,
        store: EntityStore,
        on_progress: Optional[Callable[[int, str], None]] = None,
    ) -> RollbackOutcome:
        """Replay a record against the inventory, one entity at a time.

        Not transactional: every change is attempted and reported; the
        rollback succeeds only if all of them did.
        """
        data = self.get(rollback_id)
        steps: list[Tuple[str, str, Callable[[], None]]] = []
        for change in data.log_source_changes:
            steps.append(("log_source", change.log_source_id,
                          lambda c=change: self._restore_log_source(store, c)))
        for change in data.host_changes:
            steps.append(("host", change.host_id,
                          lambda c=change: self._restore_host(store, c)))
        for change in data.system_monitor_changes:
            steps.append(("system_monitor", change.system_monitor_id,
                          lambda c=change: self._restore_agent(store, c)))

        outcomes: list[EntityOutcome] = []
        for i, (kind, entity_id, restore) in enumerate(steps):
            if on_progress is not None:
                on_progress(100 * i // max(len(steps), 1), f"Restoring {kind} {entity_id}")
            try:
                restore()
            except RemoteOperationError as e:
                logger.error("Rollback %s: failed to restore %s %s: %s",
                             rollback_id, kind, entity_id, e)
                outcomes.append(EntityOutcome(kind=kind, entity_id=entity_id,
                                              success=False, error=str(e)))
            else:
                outcomes.append(EntityOutcome(kind=kind, entity_id=entity_id, success=True))

        outcome = RollbackOutcome(
            rollback_id=rollback_id,
            success=all(o.success for o in outcomes),
            entities=outcomes,
        )
        failed = sum(1 for o in outcomes if not o.success)
        logger.info("Rollback %s finished: %d/%d changes restored",
                    rollback_id, len(outcomes) - failed, len(outcomes))
        return outcome
