# src/sfdc_bulk/core/schemas.py
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field


# --- Bulk job enums ---

class JobState(str, Enum):
    OPEN = "Open"
    UPLOAD_COMPLETE = "UploadComplete"
    IN_PROGRESS = "InProgress"
    JOB_COMPLETE = "JobComplete"
    ABORTED = "Aborted"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_JOB_STATES

    @property
    def rank(self) -> int:
        return _STATE_RANK[self]


TERMINAL_JOB_STATES = frozenset({JobState.JOB_COMPLETE, JobState.ABORTED, JobState.FAILED})
FAILED_JOB_STATES = frozenset({JobState.ABORTED, JobState.FAILED})

# Aborted and Failed share the terminal rank with JobComplete; none is reachable from another.
_STATE_RANK = {
    JobState.OPEN: 0,
    JobState.UPLOAD_COMPLETE: 1,
    JobState.IN_PROGRESS: 2,
    JobState.JOB_COMPLETE: 3,
    JobState.ABORTED: 3,
    JobState.FAILED: 3,
}


class BulkOperation(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    UPSERT = "upsert"
    DELETE = "delete"
    QUERY = "query"


INGEST_OPERATIONS = frozenset({BulkOperation.INSERT, BulkOperation.UPDATE, BulkOperation.UPSERT, BulkOperation.DELETE})


class JobType(str, Enum):
    INGEST = "ingest"
    QUERY = "query"


# --- Bulk job models ---

class BulkJobResults(BaseModel):
    """Status snapshot of a bulk job as reported by GET /jobs/{type}/{id}."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str
    state: JobState
    operation: Optional[str] = None
    object: Optional[str] = None
    numberRecordsProcessed: Optional[int] = None
    numberRecordsFailed: Optional[int] = None
    errorMessage: Optional[str] = None


class BulkJob(BaseModel):
    """
    A remote Bulk API 2.0 job held by the client for the duration of a pipeline run.
    `id` is assigned by Salesforce; `state` only ever moves forward.
    """
    model_config = ConfigDict(extra="ignore", populate_by_name=True, validate_assignment=True)

    id: str
    operation: str
    object: Optional[str] = None
    externalIdFieldName: Optional[str] = None
    assignmentRuleId: Optional[str] = None
    state: JobState = JobState.OPEN
    contentUrl: Optional[str] = None
    numberRecordsProcessed: Optional[int] = None
    numberRecordsFailed: Optional[int] = None
    errorMessage: Optional[str] = None
    job_type: JobType = JobType.INGEST

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def apply_snapshot(self, snapshot: BulkJobResults) -> bool:
        """
        Overwrites counters and error message with the server's latest values and moves
        `state` forward. Returns False if the snapshot's state would move the job backwards,
        in which case the held state is kept.
        """
        if snapshot.numberRecordsProcessed is not None:
            self.numberRecordsProcessed = snapshot.numberRecordsProcessed
        if snapshot.numberRecordsFailed is not None:
            self.numberRecordsFailed = snapshot.numberRecordsFailed
        if snapshot.errorMessage:
            self.errorMessage = snapshot.errorMessage

        if snapshot.state == self.state:
            return True
        if self.state.is_terminal or snapshot.state.rank < self.state.rank:
            return False
        self.state = snapshot.state
        return True


class ResultPage(BaseModel):
    """One fetch of job results. An empty locator marks the final page."""
    locator: str = ""
    number_of_records: Optional[int] = None
    body: str = ""

    @property
    def is_last(self) -> bool:
        return not self.locator


# --- Per-record results ---

class SalesforceErrorMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    statusCode: Optional[str] = None
    message: str = ""
    fields: List[str] = Field(default_factory=list)


class SalesforceResult(BaseModel):
    """
    Outcome of one record. For bulk jobs `record` holds the input columns Salesforce echoes
    back, so a failed row with no id can still be matched to the record that produced it.
    """
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    success: bool
    created: Optional[bool] = None
    errors: List[SalesforceErrorMessage] = Field(default_factory=list)
    record: Dict[str, str] = Field(default_factory=dict)


class SalesforceResults(BaseModel):
    """Ordered per-record outcomes. `has_salesforce_errors` is derived from the members on every access."""
    results: List[SalesforceResult] = Field(default_factory=list)

    @computed_field  # type: ignore[misc]
    @property
    def has_salesforce_errors(self) -> bool:
        return any(not result.success for result in self.results)

    def append(self, result: SalesforceResult) -> None:
        self.results.append(result)

    def extend(self, results: List[SalesforceResult]) -> None:
        self.results.extend(results)

    def __len__(self) -> int:
        return len(self.results)


class BulkJobOutcome(BaseModel):
    """Return value of a bulk pipeline invocation."""
    job_ids: List[str] = Field(default_factory=list)
    job: Optional[BulkJob] = None
    results: Optional[SalesforceResults] = None


# --- Request payloads ---

class BulkIngestJobRequest(BaseModel):
    """Body of POST /jobs/ingest."""
    object: str = Field(..., description="The API name of the Salesforce SObject.")
    operation: BulkOperation
    contentType: str = "CSV"
    lineEnding: str = "LF"
    externalIdFieldName: Optional[str] = Field(None, description="External ID field API name, required for upsert.")
    assignmentRuleId: Optional[str] = Field(None, description="Assignment rule to run for Lead or Case records.")

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class BulkQueryJobRequest(BaseModel):
    """Body of POST /jobs/query."""
    operation: str = "query"
    query: str

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")
