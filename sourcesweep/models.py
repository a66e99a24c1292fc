from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Optional

from pydantic import AliasChoices, BaseModel, BeforeValidator, ConfigDict, Field


def canonical_id(value: Any) -> str:
    """Normalise an inventory id (string or number) to its canonical string."""
    if isinstance(value, bool):
        raise ValueError("boolean is not a valid entity id")
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return repr(value)
    if isinstance(value, str):
        value = value.strip()
        if not value:
            raise ValueError("entity id must not be empty")
        return value
    raise ValueError(f"unsupported entity id: {value!r}")


# Opaque inventory identifier: compared and formatted, never branched on by type.
EntityId = Annotated[str, BeforeValidator(canonical_id)]


def _blank_if_none(value: Any) -> Any:
    return "" if value is None else value


# Inventory text fields come back as null for entities that never reported.
Text = Annotated[str, BeforeValidator(_blank_if_none)]


RETIRED = "Retired"
UNLICENSED = "Unlicensed"


class Reachability(str, Enum):
    REACHABLE = "reachable"
    UNREACHABLE = "unreachable"


class JobState(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


# ---------------------------------------------------------------------------
# Inventory entities (parsed from the remote store's camelCase payloads)
# ---------------------------------------------------------------------------

class HostRef(BaseModel):
    id: EntityId
    name: Text = ""


class LogSourceType(BaseModel):
    name: Text = ""


class LogSource(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: EntityId
    name: Text = ""
    record_status: Text = Field("", validation_alias=AliasChoices("recordStatus", "record_status"))
    max_log_date: Text = Field("", validation_alias=AliasChoices("maxLogDate", "max_log_date"))
    host: HostRef
    log_source_type: Annotated[LogSourceType, BeforeValidator(lambda v: v or {})] = Field(
        default_factory=LogSourceType,
        validation_alias=AliasChoices("logSourceType", "log_source_type"),
    )
    system_monitor_id: Optional[EntityId] = Field(
        None, validation_alias=AliasChoices("systemMonitorId", "system_monitor_id")
    )
    system_monitor_name: Text = Field(
        "", validation_alias=AliasChoices("systemMonitorName", "system_monitor_name")
    )
    recommended: bool = False


class HostIdentifier(BaseModel):
    type: str
    value: str


# ---------------------------------------------------------------------------
# Analysis results
# ---------------------------------------------------------------------------

class AnalysisResult(BaseModel):
    id: EntityId
    host_id: EntityId
    host_name: str
    name: str
    log_source_type: str
    max_log_date: str
    ping_result: Reachability


class HostAnalysis(BaseModel):
    host_id: EntityId
    host_name: str
    log_source_count: int = 0
    max_log_date: str = ""
    ping_result: Reachability = Reachability.UNREACHABLE
    recommended: bool = False
    log_sources: list[LogSource] = Field(default_factory=list)


class CollectionHostAnalysis(BaseModel):
    system_monitor_id: EntityId
    system_monitor_name: str
    log_source_count: int = 0
    ping_result: Reachability = Reachability.UNREACHABLE
    recommended: bool = False
    log_sources: list[LogSource] = Field(default_factory=list)


class RetirementRecord(BaseModel):
    log_source_id: EntityId
    host_id: EntityId
    host_name: str
    original_name: str
    retired_name: str
    original_status: str
    retired_status: str = RETIRED
    timestamp: datetime


# ---------------------------------------------------------------------------
# Rollback journal
# ---------------------------------------------------------------------------

class LogSourceChange(BaseModel):
    log_source_id: EntityId
    host_id: EntityId
    host_name: str
    original_name: str
    original_status: str
    system_monitor_id: Optional[EntityId] = None


class HostChange(BaseModel):
    host_id: EntityId
    host_name: str
    original_name: str
    original_status: str
    original_identifiers: list[HostIdentifier] = Field(default_factory=list)
    # only identifiers removed during this run
    retired_identifiers: list[HostIdentifier] = Field(default_factory=list)


class SystemMonitorChange(BaseModel):
    system_monitor_id: EntityId
    system_monitor_name: str = ""
    original_status: str
    original_license_type: str = ""


class RollbackData(BaseModel):
    id: str
    timestamp: datetime
    operation_type: str
    description: str = ""
    job_id: str
    log_source_changes: list[LogSourceChange] = Field(default_factory=list)
    host_changes: list[HostChange] = Field(default_factory=list)
    system_monitor_changes: list[SystemMonitorChange] = Field(default_factory=list)
    checksum: str = ""


class RollbackSummary(BaseModel):
    id: str
    timestamp: datetime
    operation: str
    description: str
    job_id: str
    log_sources: int
    hosts: int
    system_monitors: int


class EntityOutcome(BaseModel):
    kind: str
    entity_id: EntityId
    success: bool
    error: Optional[str] = None


class RollbackOutcome(BaseModel):
    rollback_id: str
    success: bool
    entities: list[EntityOutcome] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------

class JobStatus(BaseModel):
    job_id: str
    type: str
    status: JobState
    progress: int = 0
    message: str = ""
    results: list[AnalysisResult] = Field(default_factory=list)
    host_analysis: list[HostAnalysis] = Field(default_factory=list)
    collection_host_analysis: list[CollectionHostAnalysis] = Field(default_factory=list)
    retirement_records: list[RetirementRecord] = Field(default_factory=list)
    rollback_id: Optional[str] = None
    rollback_outcome: Optional[RollbackOutcome] = None
    error: Optional[str] = None
    start_time: float
    end_time: Optional[float] = None
