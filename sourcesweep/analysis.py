"""Candidate filtering and the three retirement analyses.

:func:`is_candidate` is the single predicate used by the initial analyses
and by the post-retirement re-checks in :mod:`sourcesweep.retirement`.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from sourcesweep.errors import ValidationError
from sourcesweep.log import get_logger
from sourcesweep.models import (
    RETIRED,
    AnalysisResult,
    CollectionHostAnalysis,
    HostAnalysis,
    LogSource,
    Reachability,
)

logger = get_logger("analysis")

# Vendor-internal agent sources
RESERVED_TYPE_PREFIX = "LogRhythm"
# Synthetic test sources and hosts
SYNTHETIC_MARKER = "echo"

Prober = Callable[[Iterable[str]], dict[str, Reachability]]


def is_excluded(source: LogSource, excluded_patterns: Iterable[str]) -> bool:
    type_name = source.log_source_type.name
    if type_name.startswith(RESERVED_TYPE_PREFIX):
        return True
    if SYNTHETIC_MARKER in source.host.name.lower() or SYNTHETIC_MARKER in source.name.lower():
        return True
    lowered = type_name.lower()
    return any(pattern.lower() in lowered for pattern in excluded_patterns if pattern)


def is_candidate(source: LogSource, excluded_patterns: Iterable[str]) -> bool:
    """True when the source is active and not excluded from retirement."""
    if source.record_status == RETIRED:
        return False
    return not is_excluded(source, excluded_patterns)


def parse_selected_date(value: str) -> datetime:
    try:
        return datetime.strptime(value, "%Y-%m-%d").replace(tzinfo=timezone.utc)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Invalid date format: {value!r} (expected YYYY-MM-DD)") from e


def parse_log_date(value: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def is_stale(source: LogSource, cutoff: datetime) -> bool:
    # Unparseable dates count as stale.
    last = parse_log_date(source.max_log_date)
    return last is None or last <= cutoff


def stale_candidates(
    sources: Iterable[LogSource],
    cutoff: datetime,
    excluded_patterns: Iterable[str],
) -> list[LogSource]:
    patterns = list(excluded_patterns)
    return [s for s in sources if is_stale(s, cutoff) and is_candidate(s, patterns)]


def analyze_log_sources(candidates: list[LogSource], probe: Prober) -> list[AnalysisResult]:
    """Test mode: report each candidate with its host's reachability."""
    pings = probe({s.host.name for s in candidates})
    return [
        AnalysisResult(
            id=s.id,
            host_id=s.host.id,
            host_name=s.host.name,
            name=s.name,
            log_source_type=s.log_source_type.name,
            max_log_date=s.max_log_date,
            ping_result=pings.get(s.host.name, Reachability.UNREACHABLE),
        )
        for s in candidates
    ]


def group_by_host(candidates: Iterable[LogSource]) -> list[HostAnalysis]:
    hosts: dict[str, HostAnalysis] = {}
    for source in candidates:
        host = hosts.get(source.host.id)
        if host is None:
            host = HostAnalysis(host_id=source.host.id, host_name=source.host.name)
            hosts[source.host.id] = host
        host.log_sources.append(source.model_copy())
        host.log_source_count += 1
        if source.max_log_date > host.max_log_date:
            host.max_log_date = source.max_log_date
    return list(hosts.values())


def analyze_hosts(
    candidates: list[LogSource],
    probe: Prober,
    cutoff: Optional[datetime] = None,
) -> list[HostAnalysis]:
    """Apply mode: recommend hosts whose every candidate source is unreachable.

    A reachable host with stale logs needs troubleshooting, not retirement.
    """
    hosts = group_by_host(candidates)
    pings = probe({h.host_name for h in hosts})

    for host in hosts:
        host.ping_result = pings.get(host.host_name, Reachability.UNREACHABLE)
        unreachable = host.ping_result is Reachability.UNREACHABLE
        for source in host.log_sources:
            source.recommended = unreachable
            if not unreachable and cutoff is not None and is_stale(source, cutoff):
                logger.info("Log source %s on reachable host %s has stale logs; "
                            "troubleshoot instead of retiring", source.name, host.host_name)
        recommended = sum(1 for s in host.log_sources if s.recommended)
        host.recommended = recommended > 0 and recommended == len(host.log_sources)
        logger.debug("Host %s: %d/%d log sources recommended", host.host_name,
                     recommended, len(host.log_sources))

    logger.info("Host analysis: %d hosts, %d recommended for retirement",
                len(hosts), sum(1 for h in hosts if h.recommended))
    return hosts


def analyze_collection_hosts(
    sources: Iterable[LogSource],
    excluded_patterns: Iterable[str],
    probe: Prober,
) -> list[CollectionHostAnalysis]:
    """Recommend agents that no longer own any candidate log source.

    Agents are discovered from every log source, retired ones included, so
    an agent whose sources were all retired shows up with a count of zero.
    """
    patterns = list(excluded_patterns)
    agents: dict[str, CollectionHostAnalysis] = {}
    for source in sources:
        if source.system_monitor_id is None or not source.system_monitor_name:
            continue
        agent = agents.get(source.system_monitor_id)
        if agent is None:
            agent = CollectionHostAnalysis(
                system_monitor_id=source.system_monitor_id,
                system_monitor_name=source.system_monitor_name,
            )
            agents[source.system_monitor_id] = agent
        if is_candidate(source, patterns):
            agent.log_sources.append(source)
            agent.log_source_count += 1

    pings = probe({a.system_monitor_name for a in agents.values()})
    for agent in agents.values():
        agent.ping_result = pings.get(agent.system_monitor_name, Reachability.UNREACHABLE)
        agent.recommended = agent.log_source_count == 0

    result = list(agents.values())
    logger.info("Collection host analysis: %d agents, %d recommended for retirement",
                len(result), sum(1 for a in result if a.recommended))
    return result
