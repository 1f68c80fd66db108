# src/sfdc_bulk/salesforce/bulk.py
import asyncio
import logging
from typing import Any, Dict, Optional, Set

from pydantic import ValidationError as PydanticValidationError

from sfdc_bulk.core.config import ASSIGNMENT_RULE_OBJECTS, settings
from sfdc_bulk.core.exceptions import BulkJobFailedError, CancellationError, RemoteError, ValidationError
from sfdc_bulk.core.schemas import (
    FAILED_JOB_STATES, INGEST_OPERATIONS, BulkIngestJobRequest, BulkJob, BulkJobResults,
    BulkOperation, BulkQueryJobRequest, JobState, JobType,
)
from sfdc_bulk.salesforce.client import CSV_TYPE, SalesforceApiClient

logger = logging.getLogger(settings.APP_NAME)


def validate_job_request(
    object_name: str,
    operation: str,
    external_id_field: Optional[str] = None,
    assignment_rule_id: Optional[str] = None,
) -> BulkOperation:
    """
    Checks an ingest job request before anything is sent to Salesforce.
    Returns the normalized operation.
    """
    if not object_name or not isinstance(object_name, str):
        raise ValidationError("object_name must be a non-empty string")
    try:
        op = BulkOperation(operation.lower() if isinstance(operation, str) else operation)
    except ValueError:
        op = None
    if op not in INGEST_OPERATIONS:
        raise ValidationError(f"Invalid bulk operation '{operation}'. Must be one of {sorted(o.value for o in INGEST_OPERATIONS)}.")
    if op == BulkOperation.UPSERT and not external_id_field:
        raise ValidationError("external_id_field is required for upsert operation.")
    if assignment_rule_id and object_name not in ASSIGNMENT_RULE_OBJECTS:
        raise ValidationError(
            f"Assignment rules are only supported for {sorted(ASSIGNMENT_RULE_OBJECTS)}, not {object_name}."
        )
    return op


class BulkJobManager:
    """
    Drives the lifecycle of Bulk API 2.0 jobs: create, upload batches, close, poll.
    A manager closes each job at most once.
    """

    def __init__(self, client: SalesforceApiClient):
        self.client = client
        self.config = client.config
        self._closed_jobs: Set[str] = set()

    @staticmethod
    def _parse_job(job_info: Any, stage: str, job_type: JobType, defaults: Optional[Dict[str, Any]] = None) -> BulkJob:
        if not isinstance(job_info, dict) or not job_info.get("id"):
            logger.error(f"Bulk job {stage} response carries no job id: {job_info}")
            raise RemoteError(stage, None, str(job_info), message=f"Salesforce {stage} response did not include a job id.")
        data = dict(defaults or {})
        data.update({k: v for k, v in job_info.items() if v is not None})
        data["job_type"] = job_type
        try:
            return BulkJob.model_validate(data)
        except PydanticValidationError as e:
            raise RemoteError(stage, None, str(job_info), message=f"Unexpected bulk job description: {e}") from e

    async def create_job(
        self,
        object_name: str,
        operation: str,
        external_id_field: Optional[str] = None,
        assignment_rule_id: Optional[str] = None,
    ) -> BulkJob:
        """Creates an ingest job in the Open state."""
        op = validate_job_request(object_name, operation, external_id_field, assignment_rule_id)
        job_request = BulkIngestJobRequest(
            object=object_name,
            operation=op,
            externalIdFieldName=external_id_field if op == BulkOperation.UPSERT else None,
            assignmentRuleId=assignment_rule_id or None,
        )
        job_info = await self.client.request_json("POST", "/jobs/ingest", body=job_request.to_payload(), stage="create")
        job = self._parse_job(
            job_info, "create", JobType.INGEST,
            defaults={
                "operation": op.value,
                "object": object_name,
                "externalIdFieldName": job_request.externalIdFieldName,
                "assignmentRuleId": job_request.assignmentRuleId,
            },
        )
        logger.info(f"Bulk job created. ID: {job.id}, Operation: {op.value}, Object: {object_name}")
        return job

    async def create_query_job(self, query: str, operation: str = "query") -> BulkJob:
        """Creates a query job; Salesforce starts processing it right away."""
        if not query or not query.strip():
            raise ValidationError("soql query must be a non-empty string")
        if operation not in ("query", "queryAll"):
            raise ValidationError(f'Invalid query operation {operation!r}. Must be "query" or "queryAll".')
        job_request = BulkQueryJobRequest(operation=operation, query=query)
        job_info = await self.client.request_json("POST", "/jobs/query", body=job_request.to_payload(), stage="create")
        job = self._parse_job(job_info, "create", JobType.QUERY, defaults={"operation": operation})
        logger.info(f"Bulk query job created. ID: {job.id}. State: {job.state.value}")
        return job

    async def upload_batch(self, job: BulkJob, csv_body: str) -> None:
        """Uploads one CSV batch to an Open ingest job. Failures are raised, not retried."""
        if job.job_type != JobType.INGEST:
            raise ValidationError(f"Bulk job {job.id} is a query job; data can only be uploaded to ingest jobs.")
        if job.state != JobState.OPEN or job.id in self._closed_jobs:
            raise ValidationError(f"Bulk job {job.id} is {job.state.value}; batches can only be uploaded to Open jobs.")
        if not csv_body or not csv_body.strip():
            raise ValidationError("CSV batch body is empty.")

        await self.client.request(
            "PUT",
            f"/jobs/ingest/{job.id}/batches",
            content_type=CSV_TYPE,
            body=csv_body,
            stage="upload",
        )
        logger.info(f"Batch of {len(csv_body.encode('utf-8'))} bytes uploaded to bulk job {job.id}.")

    async def close_job(self, job: BulkJob) -> BulkJob:
        """Marks the job UploadComplete so Salesforce starts processing it."""
        if job.id in self._closed_jobs:
            raise ValidationError(f"Bulk job {job.id} has already been closed.")
        self._closed_jobs.add(job.id)

        logger.info(f"Closing bulk job {job.id} to start processing.")
        job_info = await self.client.request_json(
            "PATCH", f"/jobs/ingest/{job.id}", body={"state": JobState.UPLOAD_COMPLETE.value}, stage="close"
        )
        if job.state == JobState.OPEN:
            job.state = JobState.UPLOAD_COMPLETE
        if isinstance(job_info, dict) and job_info.get("state"):
            try:
                job.apply_snapshot(BulkJobResults.model_validate({**job_info, "id": job.id}))
            except PydanticValidationError:
                logger.warning(f"Ignoring unexpected close response for bulk job {job.id}: {job_info}")
        logger.info(f"Bulk job {job.id} closed. Current state: {job.state.value}")
        return job

    async def abort_job(self, job: BulkJob) -> BulkJob:
        job_info = await self.client.request_json(
            "PATCH", f"/jobs/{job.job_type.value}/{job.id}", body={"state": JobState.ABORTED.value}, stage="abort"
        )
        if not job.is_terminal:
            job.state = JobState.ABORTED
        logger.warning(f"Bulk job {job.id} aborted. Response: {job_info}")
        return job

    async def get_job_info(self, job_id: str, job_type: JobType = JobType.INGEST, stage: str = "status") -> BulkJobResults:
        """Fetches the current status of a job."""
        if not job_id:
            raise ValidationError("job_id must be a non-empty string")
        job_info = await self.client.request_json("GET", f"/jobs/{JobType(job_type).value}/{job_id}", stage=stage)
        try:
            return BulkJobResults.model_validate(job_info)
        except PydanticValidationError as e:
            raise RemoteError(stage, None, str(job_info), message=f"Unexpected bulk job status for {job_id}: {e}") from e

    def _raise_if_cancelled(self, job: BulkJob, cancel_event: Optional[asyncio.Event], deadline: Optional[float]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            logger.warning(f"Polling of bulk job {job.id} cancelled in state {job.state.value}.")
            raise CancellationError(f"Polling of bulk job {job.id} was cancelled in state {job.state.value}.")
        if deadline is not None and asyncio.get_running_loop().time() >= deadline:
            logger.warning(f"Polling of bulk job {job.id} timed out in state {job.state.value}.")
            raise CancellationError(f"Polling of bulk job {job.id} timed out in state {job.state.value}.")

    @staticmethod
    async def _sleep(interval: float, cancel_event: Optional[asyncio.Event], deadline: Optional[float]) -> None:
        delay = interval
        if deadline is not None:
            delay = max(0.0, min(delay, deadline - asyncio.get_running_loop().time()))
        if cancel_event is None:
            await asyncio.sleep(delay)
            return
        try:
            # Wakes early when the event is set
            await asyncio.wait_for(cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def poll_until_terminal(
        self,
        job: BulkJob,
        interval: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
        timeout: Optional[float] = None,
    ) -> BulkJob:
        """
        Polls job status at a fixed interval until JobComplete, Aborted or Failed.
        Each tick overwrites the job's state and counters with the server's values.

        Raises:
            CancellationError: `cancel_event` was set or `timeout` elapsed first.
            RemoteError: a status request failed (stage "poll").
        """
        if interval is None:
            interval = self.config.QUERY_POLL_INTERVAL if job.job_type == JobType.QUERY else self.config.INGEST_POLL_INTERVAL
        deadline = asyncio.get_running_loop().time() + timeout if timeout is not None else None

        tick = 0
        while True:
            self._raise_if_cancelled(job, cancel_event, deadline)
            snapshot = await self.get_job_info(job.id, job.job_type, stage="poll")
            tick += 1
            if not job.apply_snapshot(snapshot):
                logger.warning(
                    f"Bulk job {job.id} reported {snapshot.state.value} after {job.state.value}; keeping {job.state.value}."
                )
            logger.debug(
                f"Bulk job {job.id} poll #{tick}: state={job.state.value} "
                f"processed={job.numberRecordsProcessed} failed={job.numberRecordsFailed}"
            )
            if job.is_terminal:
                logger.info(f"Bulk job {job.id} reached terminal state {job.state.value} after {tick} polls.")
                return job
            self._raise_if_cancelled(job, cancel_event, deadline)
            await self._sleep(interval, cancel_event, deadline)

    @staticmethod
    def raise_for_failed_job(job: BulkJob) -> None:
        if job.state in FAILED_JOB_STATES:
            logger.error(f"Bulk job {job.id} {job.state.value}. Error: {job.errorMessage}")
            raise BulkJobFailedError(job.id, job.state.value, job.errorMessage)
