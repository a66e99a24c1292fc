from __future__ import annotations

import functools
import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterable, Iterator, Optional

from sourcesweep.analysis import (
    Prober,
    analyze_hosts,
    analyze_log_sources,
    parse_selected_date,
    stale_candidates,
)
from sourcesweep.broadcast import Broadcaster
from sourcesweep.config import Settings
from sourcesweep.errors import EntityNotFoundError, SweepError, ValidationError
from sourcesweep.log import get_logger
from sourcesweep.models import (
    CollectionHostAnalysis,
    HostAnalysis,
    JobState,
    JobStatus,
    RollbackOutcome,
    canonical_id,
)
from sourcesweep.probe import probe_hosts
from sourcesweep.retirement import RetirementContext, RetirementPipeline
from sourcesweep.rollback import RollbackJournal
from sourcesweep.store import EntityStore

logger = get_logger("engine")

# Job kinds
ANALYSIS = "test"
HOST_ANALYSIS = "apply"
RETIREMENT = "execute"
ROLLBACK = "rollback"


# ---------------------------------------------------------------------------
# Locking
# ---------------------------------------------------------------------------

class ReadWriteLock:
    """Many concurrent readers or one writer; waiting writers block new readers."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._waiting_writers:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._waiting_writers += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._waiting_writers -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


# ---------------------------------------------------------------------------
# Job & JobRegistry
# ---------------------------------------------------------------------------

class Job:
    def __init__(self, job_id: str, job_type: str, message: str = "") -> None:
        self.id = job_id
        self.type = job_type
        self.status = JobState.RUNNING
        self.progress = 0
        self.message = message
        self.results: list = []
        self.host_analysis: list[HostAnalysis] = []
        self.collection_host_analysis: list[CollectionHostAnalysis] = []
        self.retirement_records: list = []
        self.rollback_id: Optional[str] = None
        self.rollback_outcome: Optional[RollbackOutcome] = None
        self.error: Optional[str] = None
        self.start_time = time.time()
        self.end_time: Optional[float] = None
        self.cancel_event = threading.Event()

    @property
    def finished(self) -> bool:
        return self.status is not JobState.RUNNING

    @property
    def duration(self) -> float:
        end = self.end_time if self.end_time else time.time()
        return end - self.start_time

    def complete(self, message: Optional[str] = None) -> None:
        if self.finished:
            return
        self.status = JobState.COMPLETED
        self.progress = 100
        if message is not None:
            self.message = message
        self.end_time = time.time()

    def fail(self, error: str) -> None:
        if self.finished:
            return
        self.status = JobState.ERROR
        self.error = error
        self.message = f"Error: {error}"
        self.end_time = time.time()

    def to_status(self) -> JobStatus:
        return JobStatus(
            job_id=self.id,
            type=self.type,
            status=self.status,
            progress=self.progress,
            message=self.message,
            results=list(self.results),
            host_analysis=list(self.host_analysis),
            collection_host_analysis=list(self.collection_host_analysis),
            retirement_records=list(self.retirement_records),
            rollback_id=self.rollback_id,
            rollback_outcome=self.rollback_outcome,
            error=self.error,
            start_time=self.start_time,
            end_time=self.end_time,
        )


class JobRegistry:
    def __init__(self) -> None:
        self._jobs: Dict[str, Job] = {}
        self._lock = ReadWriteLock()
        self._listeners: list[Callable[[JobStatus], None]] = []

    def add_listener(self, listener: Callable[[JobStatus], None]) -> None:
        self._listeners.append(listener)

    def _notify(self, snapshot: JobStatus) -> None:
        for listener in self._listeners:
            listener(snapshot)

    def _new_id(self, kind: str) -> str:
        base = f"{kind}_{time.time_ns() // 1_000_000}"
        job_id, n = base, 1
        while job_id in self._jobs:
            n += 1
            job_id = f"{base}_{n}"
        return job_id

    def create_job(self, kind: str, message: str = "") -> str:
        with self._lock.write():
            job = Job(self._new_id(kind), kind, message)
            self._jobs[job.id] = job
            snapshot = job.to_status()
        logger.info("Job %s (%s) created", job.id, kind)
        self._notify(snapshot)
        return job.id

    def mutate(self, job_id: str, fn: Callable[[Job], Any]) -> JobStatus:
        """Apply ``fn`` to the job under the write lock, then notify listeners."""
        with self._lock.write():
            job = self._jobs.get(job_id)
            if job is None:
                raise EntityNotFoundError(f"Job {job_id} not found")
            fn(job)
            snapshot = job.to_status()
        self._notify(snapshot)
        return snapshot

    def update(self, job_id: str, progress: Optional[int] = None,
               message: Optional[str] = None, **fields: Any) -> JobStatus:
        def apply(job: Job) -> None:
            if progress is not None:
                job.progress = progress
            if message is not None:
                job.message = message
            for key, value in fields.items():
                setattr(job, key, value)
        return self.mutate(job_id, apply)

    def complete(self, job_id: str, message: Optional[str] = None) -> JobStatus:
        return self.mutate(job_id, lambda job: job.complete(message))

    def fail(self, job_id: str, error: str) -> JobStatus:
        return self.mutate(job_id, lambda job: job.fail(error))

    def snapshot(self, job_id: str) -> Optional[JobStatus]:
        with self._lock.read():
            job = self._jobs.get(job_id)
            return job.to_status() if job else None

    def list_jobs(self) -> list[JobStatus]:
        with self._lock.read():
            jobs = [job.to_status() for job in self._jobs.values()]
        return sorted(jobs, key=lambda j: j.start_time)

    def cancel_event(self, job_id: str) -> threading.Event:
        with self._lock.read():
            job = self._jobs.get(job_id)
            if job is None:
                raise EntityNotFoundError(f"Job {job_id} not found")
            return job.cancel_event

    def cancel(self, job_id: str) -> bool:
        """Request cooperative cancellation. False if the job already finished."""
        with self._lock.read():
            job = self._jobs.get(job_id)
            if job is None:
                raise EntityNotFoundError(f"Job {job_id} not found")
            if job.finished:
                return False
            job.cancel_event.set()
        logger.info("Cancellation requested for job %s", job_id)
        return True

    def _run(self, job_id: str, target: Callable[..., Optional[str]], args: tuple) -> None:
        started = time.monotonic()
        logger.info("Job %s started", job_id)
        try:
            message = target(job_id, *args)
            self.complete(job_id, message)
            logger.info("Job %s completed (%.1fs)", job_id, time.monotonic() - started)
        except Exception as e:
            logger.error("Job %s failed: %s", job_id, e, exc_info=True)
            self.fail(job_id, str(e))

    def launch(self, job_id: str, target: Callable[..., Optional[str]], *args: Any) -> threading.Thread:
        """Run ``target(job_id, *args)`` on a daemon thread.

        The target's return value becomes the completion message; any
        exception fails the job with its text.
        """
        t = threading.Thread(target=self._run, args=(job_id, target, args),
                             name=f"job-{job_id}", daemon=True)
        t.start()
        return t


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class Engine:
    """Trigger operations: validate, create a job, run it in the background."""

    def __init__(
        self,
        settings: Settings,
        store: Optional[EntityStore] = None,
        registry: Optional[JobRegistry] = None,
        broadcaster: Optional[Broadcaster] = None,
        journal: Optional[RollbackJournal] = None,
        prober: Optional[Prober] = None,
    ) -> None:
        self.settings = settings
        self.store = store or EntityStore(settings.inventory)
        self.registry = registry or JobRegistry()
        self.broadcaster = broadcaster or Broadcaster()
        self.registry.add_listener(self.broadcaster.publish)
        if journal is None:
            journal = RollbackJournal(settings.rollback, settings.analysis.retirement_marker)
            journal.load()
        self.journal = journal
        self.prober: Prober = prober or functools.partial(
            probe_hosts,
            ports=settings.probe.ports,
            timeout=settings.probe.timeout,
            max_concurrent=settings.probe.max_concurrent,
        )
        self.pipeline = RetirementPipeline(self.store, settings.analysis, self.registry, self.prober)

    @property
    def excluded(self) -> list[str]:
        return self.settings.analysis.excluded_log_sources

    # -- triggers ------------------------------------------------------

    def start_analysis(self, date: str) -> str:
        cutoff = parse_selected_date(date)
        job_id = self.registry.create_job(ANALYSIS, "Starting log source analysis...")
        self.registry.launch(job_id, self._run_analysis, cutoff)
        return job_id

    def start_host_analysis(self, date: str) -> str:
        cutoff = parse_selected_date(date)
        job_id = self.registry.create_job(HOST_ANALYSIS, "Starting host analysis...")
        self.registry.launch(job_id, self._run_host_analysis, cutoff)
        return job_id

    def start_retirement(self, selected_hosts: Iterable[Any],
                         analysis_job_id: Optional[str] = None) -> str:
        try:
            selected = list(dict.fromkeys(canonical_id(h) for h in selected_hosts))
        except ValueError as e:
            raise ValidationError(f"Invalid host id: {e}") from e
        if not selected:
            raise ValidationError("No hosts selected for retirement")

        analysis = self._find_host_analysis(analysis_job_id)
        by_id = {h.host_id: h for h in analysis.host_analysis}
        hosts = [by_id[h] for h in selected if h in by_id]
        if not hosts:
            raise ValidationError(
                f"None of the selected hosts appear in analysis {analysis.job_id}"
            )
        unknown = len(selected) - len(hosts)
        if unknown:
            logger.warning("Ignoring %d selected hosts missing from analysis %s",
                           unknown, analysis.job_id)

        job_id = self.registry.create_job(RETIREMENT, f"Preparing retirement of {len(hosts)} hosts...")
        self.registry.launch(job_id, self._run_retirement, hosts)
        return job_id

    def start_rollback(self, rollback_id: str) -> str:
        self.journal.get(rollback_id)
        job_id = self.registry.create_job(ROLLBACK, f"Starting rollback {rollback_id}...")
        self.registry.launch(job_id, self._run_rollback, rollback_id)
        return job_id

    def cancel_job(self, job_id: str) -> bool:
        return self.registry.cancel(job_id)

    def get_job(self, job_id: str) -> Optional[JobStatus]:
        return self.registry.snapshot(job_id)

    def list_jobs(self) -> list[JobStatus]:
        return self.registry.list_jobs()

    def _find_host_analysis(self, analysis_job_id: Optional[str]) -> JobStatus:
        if analysis_job_id:
            job = self.registry.snapshot(analysis_job_id)
            if job is None:
                raise EntityNotFoundError(f"Job {analysis_job_id} not found")
            if not job.host_analysis:
                raise ValidationError(f"Job {analysis_job_id} has no host analysis")
            return job
        candidates = [j for j in self.registry.list_jobs() if j.host_analysis]
        if not candidates:
            raise ValidationError("No host analysis available; run an apply analysis first")
        return max(candidates, key=lambda j: j.start_time)

    # -- background tasks ----------------------------------------------

    def _load_candidates(self, job_id: str, cutoff):
        sources = self.store.list_log_sources()
        self.registry.update(job_id, progress=25,
                             message=f"Found {len(sources)} log sources, filtering...")
        candidates = stale_candidates(sources, cutoff, self.excluded)
        hosts = len({s.host.id for s in candidates})
        self.registry.update(job_id, progress=50,
                             message=f"Testing connectivity to {hosts} hosts...")
        return candidates

    def _run_analysis(self, job_id: str, cutoff) -> str:
        candidates = self._load_candidates(job_id, cutoff)
        results = analyze_log_sources(candidates, self.prober)
        self.registry.update(job_id, progress=75, message="Compiling results...", results=results)
        return f"Analysis complete: {len(results)} stale log sources found"

    def _run_host_analysis(self, job_id: str, cutoff) -> str:
        candidates = self._load_candidates(job_id, cutoff)
        hosts = analyze_hosts(candidates, self.prober, cutoff)
        self.registry.update(job_id, progress=75, message="Compiling results...",
                             host_analysis=hosts)
        recommended = sum(1 for h in hosts if h.recommended)
        return f"Host analysis complete: {recommended}/{len(hosts)} hosts recommended for retirement"

    def _run_retirement(self, job_id: str, hosts: list[HostAnalysis]) -> str:
        ctx = RetirementContext(job_id=job_id, cancel_event=self.registry.cancel_event(job_id))
        preliminary = None
        if self.journal.auto_snapshot:
            self.registry.update(job_id, progress=2, message="Creating rollback snapshot...")
            preliminary = self.journal.snapshot(self.store, job_id, hosts)
            self.registry.update(job_id, rollback_id=preliminary.id)
        try:
            self.pipeline.run(ctx, hosts)
        finally:
            self.registry.update(job_id, retirement_records=list(ctx.records))
            if preliminary is not None:
                final = self.journal.finalize(preliminary, ctx.removed_identifiers)
                self.registry.update(job_id, rollback_id=final.id)
        return ctx.summary

    def _run_rollback(self, job_id: str, rollback_id: str) -> str:
        outcome = self.journal.execute(
            rollback_id, self.store,
            on_progress=lambda progress, message: self.registry.update(
                job_id, progress=progress, message=message),
        )
        self.registry.update(job_id, rollback_outcome=outcome)
        failed = sum(1 for o in outcome.entities if not o.success)
        if failed:
            raise SweepError(
                f"Rollback completed with errors: {failed} of {len(outcome.entities)} changes failed"
            )
        return f"Rollback {rollback_id} complete: {len(outcome.entities)} changes restored"


def build_engine(settings: Settings) -> Engine:
    return Engine(settings)
