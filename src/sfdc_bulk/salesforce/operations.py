# src/sfdc_bulk/salesforce/operations.py
import asyncio
import csv
import logging
import re
from io import StringIO
from typing import Any, Dict, List, Optional, Sequence, Tuple, Type

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from sfdc_bulk.core.config import settings
from sfdc_bulk.core.exceptions import CancellationError, RemoteError, SalesforceError, ValidationError
from sfdc_bulk.core.schemas import (
    BulkJob, BulkJobOutcome, BulkJobResults, BulkOperation, JobType,
    SalesforceErrorMessage, SalesforceResult, SalesforceResults,
)
from sfdc_bulk.salesforce.bulk import BulkJobManager, validate_job_request
from sfdc_bulk.salesforce.client import SalesforceApiClient
from sfdc_bulk.salesforce.iterator import BulkResultIterator
from sfdc_bulk.utils.batching import (
    ID_FIELD, extract_ids, partition_records, require_field, to_field_map,
    validate_batch_size, validate_records,
)
from sfdc_bulk.utils.data_handler import (
    convert_records_to_csv_string, parse_csv_string_to_records, read_csv_file_body,
    read_data_from_local_file, split_csv_body,
)

logger = logging.getLogger(settings.APP_NAME)

# Columns Salesforce adds to ingest job result CSVs
SF_ID_COLUMN = "sf__Id"
SF_CREATED_COLUMN = "sf__Created"
SF_ERROR_COLUMN = "sf__Error"

# e.g. "REQUIRED_FIELD_MISSING:Required fields are missing: [Name]:Name --"
_BULK_ERROR_PATTERN = re.compile(r"^(?P<code>[A-Z0-9_]+):(?P<message>.*?)(?::(?P<fields>[\w,]*))?\s*--\s*$", re.DOTALL)


def parse_bulk_error(raw: Optional[str]) -> List[SalesforceErrorMessage]:
    """Parses the sf__Error cell of a failed result row."""
    if not raw or not raw.strip():
        return []
    match = _BULK_ERROR_PATTERN.match(raw.strip())
    if not match:
        return [SalesforceErrorMessage(message=raw.strip())]
    fields = [f.strip() for f in (match.group("fields") or "").split(",") if f.strip()]
    return [SalesforceErrorMessage(statusCode=match.group("code"), message=match.group("message").strip(), fields=fields)]


def _parse_created(value: Optional[str]) -> Optional[bool]:
    if value is None or value == "":
        return None
    return value.strip().lower() == "true"


def _echoed_columns(row: Dict[str, Any]) -> Dict[str, str]:
    """The caller's own columns, as Salesforce repeats them after the sf__ columns."""
    return {k: v or "" for k, v in row.items() if not k.startswith("sf__")}


def _success_result(row: Dict[str, Any]) -> SalesforceResult:
    return SalesforceResult(
        id=row.get(SF_ID_COLUMN) or None, success=True, created=_parse_created(row.get(SF_CREATED_COLUMN)),
        record=_echoed_columns(row),
    )


def _failed_result(row: Dict[str, Any]) -> SalesforceResult:
    return SalesforceResult(
        id=row.get(SF_ID_COLUMN) or None, success=False, errors=parse_bulk_error(row.get(SF_ERROR_COLUMN)),
        record=_echoed_columns(row),
    )


# --- Bulk ingest pipeline ---

def _validate_bulk_records(
    client: SalesforceApiClient,
    op: BulkOperation,
    records: Sequence[Any],
    batch_size: int,
    external_id_field: Optional[str],
) -> List[Any]:
    """Validates the caller's records and returns what will actually be uploaded."""
    validate_records(records)
    if not records:
        raise ValidationError("No records provided for bulk operation.")
    validate_batch_size(batch_size, client.config.BULK_BATCH_SIZE_MAX, "bulk batch size")

    if op == BulkOperation.UPSERT:
        require_field(records, external_id_field)
    elif op == BulkOperation.UPDATE:
        require_field(records, ID_FIELD)
    elif op == BulkOperation.DELETE:
        return extract_ids(records)  # Only identifiers are uploaded for deletes
    return list(records)


async def _abort_quietly(manager: BulkJobManager, job: BulkJob) -> None:
    logger.warning(f"Error during bulk operation for job {job.id}. Attempting to abort job.")
    try:
        await manager.abort_job(job)
    except SalesforceError as abort_exc:
        logger.error(f"Failed to abort job {job.id} after error: {abort_exc}", exc_info=True)


async def _upload_and_close(
    manager: BulkJobManager,
    job: BulkJob,
    bodies: List[str],
    cancel_event: Optional[asyncio.Event],
) -> None:
    """Uploads every batch strictly in order, then closes the job once."""
    try:
        for index, body in enumerate(bodies, start=1):
            if cancel_event is not None and cancel_event.is_set():
                raise CancellationError(f"Bulk job {job.id} was cancelled before batch {index} of {len(bodies)} was uploaded.")
            await manager.upload_batch(job, body)
            logger.info(f"Uploaded batch {index}/{len(bodies)} to bulk job {job.id}.")
        await manager.close_job(job)
    except SalesforceError:
        await _abort_quietly(manager, job)
        raise


async def _collect_record_results(
    manager: BulkJobManager,
    job: BulkJob,
    cancel_event: Optional[asyncio.Event] = None,
) -> SalesforceResults:
    """Builds per-record results from the job's successful and failed result CSVs."""
    results = SalesforceResults()
    for suffix, to_result in (("successfulResults", _success_result), ("failedResults", _failed_result)):
        iterator = BulkResultIterator(
            manager, job, results_path=f"/jobs/ingest/{job.id}/{suffix}", wait_for_completion=False
        )
        while await iterator.advance(cancel_event):
            results.extend([to_result(row) for row in iterator.decode_current()])
        if iterator.error is not None:
            raise iterator.error
    if results.has_salesforce_errors:
        logger.warning(f"Bulk job {job.id} finished with {job.numberRecordsFailed} failed records.")
    return results


def _row_key(row: Dict[str, Any]) -> Tuple[Tuple[str, str], ...]:
    return tuple(sorted((k, v or "") for k, v in row.items() if k is not None))


def _order_by_upload(results: SalesforceResults, bodies: List[str]) -> SalesforceResults:
    """
    Reorders results into upload order by matching echoed columns against the uploaded rows.
    Duplicate rows match first come first served; unmatched results follow in server order.
    """
    pending: Dict[Tuple[Tuple[str, str], ...], List[SalesforceResult]] = {}
    for result in results.results:
        pending.setdefault(_row_key(result.record), []).append(result)

    ordered = SalesforceResults()
    for body in bodies:
        for row in parse_csv_string_to_records(body):
            matches = pending.get(_row_key(row))
            if matches:
                ordered.append(matches.pop(0))
    placed = {id(result) for result in ordered.results}
    ordered.extend([result for result in results.results if id(result) not in placed])
    return ordered


async def _run_bulk_job(
    client: SalesforceApiClient,
    object_name: str,
    op: BulkOperation,
    bodies: List[str],
    wait_for_results: bool,
    fetch_results: bool,
    external_id_field: Optional[str],
    assignment_rule_id: Optional[str],
    cancel_event: Optional[asyncio.Event],
) -> BulkJobOutcome:
    if cancel_event is not None and cancel_event.is_set():
        raise CancellationError(f"Bulk {op.value} on {object_name} was cancelled before the job was created.")
    manager = BulkJobManager(client)
    job = await manager.create_job(object_name, op.value, external_id_field, assignment_rule_id)
    await _upload_and_close(manager, job, bodies, cancel_event)

    if not (wait_for_results or fetch_results):
        return BulkJobOutcome(job_ids=[job.id], job=job)

    await manager.poll_until_terminal(job, cancel_event=cancel_event)
    manager.raise_for_failed_job(job)
    results = None
    if fetch_results:
        results = _order_by_upload(await _collect_record_results(manager, job, cancel_event), bodies)
    logger.info(
        f"Bulk {op.value} on {object_name} finished. Job: {job.id}, processed: {job.numberRecordsProcessed}, "
        f"failed: {job.numberRecordsFailed}"
    )
    return BulkJobOutcome(job_ids=[job.id], job=job, results=results)


async def perform_bulk_operation(
    client: SalesforceApiClient,
    object_name: str,
    operation: str,
    records: Sequence[Any],
    batch_size: int,
    wait_for_results: bool = False,
    fetch_results: bool = False,
    external_id_field: Optional[str] = None,
    assignment_rule_id: Optional[str] = None,
    cancel_event: Optional[asyncio.Event] = None,
) -> BulkJobOutcome:
    """
    Performs a bulk operation (insert, update, upsert, delete) using Bulk API 2.0.

    1. Validate the call. Nothing is sent if validation fails.
    2. Partition the records into CSV batches of at most `batch_size` rows.
    3. Create one job, upload every batch in order, close the job.
    4. With `wait_for_results` (or `fetch_results`), poll until the job is terminal;
       Aborted and Failed jobs raise BulkJobFailedError.
    5. With `fetch_results`, read back one SalesforceResult per record.
    """
    op = validate_job_request(object_name, operation, external_id_field, assignment_rule_id)
    payload = _validate_bulk_records(client, op, records, batch_size, external_id_field)
    bodies = [convert_records_to_csv_string(batch) for batch in partition_records(payload, batch_size)]

    logger.info(
        f"Starting Bulk API 2.0 operation: {op.value} on {object_name} "
        f"({len(payload)} records in {len(bodies)} batches)"
    )
    return await _run_bulk_job(
        client, object_name, op, bodies, wait_for_results, fetch_results,
        external_id_field, assignment_rule_id, cancel_event,
    )


def _csv_header(body: str) -> List[str]:
    return next(csv.reader(StringIO(body)), [])


async def perform_bulk_file_operation(
    client: SalesforceApiClient,
    object_name: str,
    operation: str,
    file_path: str,
    batch_size: int,
    wait_for_results: bool = False,
    fetch_results: bool = False,
    external_id_field: Optional[str] = None,
    assignment_rule_id: Optional[str] = None,
    cancel_event: Optional[asyncio.Event] = None,
) -> BulkJobOutcome:
    """
    Same pipeline as perform_bulk_operation, reading the data from a local file.
    A CSV file is uploaded as-is, split into bodies of at most `batch_size` rows;
    a JSON file is loaded into records and encoded first.
    """
    op = validate_job_request(object_name, operation, external_id_field, assignment_rule_id)
    validate_batch_size(batch_size, client.config.BULK_BATCH_SIZE_MAX, "bulk batch size")

    if file_path.lower().endswith(".json"):
        records = read_data_from_local_file(file_path)
        return await perform_bulk_operation(
            client, object_name, op.value, records, batch_size, wait_for_results, fetch_results,
            external_id_field, assignment_rule_id, cancel_event,
        )

    body = read_csv_file_body(file_path)
    header = _csv_header(body)
    if op == BulkOperation.UPSERT and external_id_field not in header:
        raise ValidationError(f"CSV file {file_path} has no '{external_id_field}' column required for upsert.")
    if op in (BulkOperation.UPDATE, BulkOperation.DELETE) and ID_FIELD not in header:
        raise ValidationError(f"CSV file {file_path} has no '{ID_FIELD}' column required for {op.value}.")

    if op == BulkOperation.DELETE and header != [ID_FIELD]:
        ids = extract_ids(parse_csv_string_to_records(body))
        bodies = [convert_records_to_csv_string(batch) for batch in partition_records(ids, batch_size)]
    else:
        bodies = split_csv_body(body, batch_size)

    logger.info(f"Starting Bulk API 2.0 operation: {op.value} on {object_name} from file {file_path} ({len(bodies)} batches)")
    return await _run_bulk_job(
        client, object_name, op, bodies, wait_for_results, fetch_results,
        external_id_field, assignment_rule_id, cancel_event,
    )


async def get_job_results(client: SalesforceApiClient, job_id: str, job_type: JobType = JobType.INGEST) -> BulkJobResults:
    """Direct status inspection of a bulk job."""
    logger.info(f"Getting status for bulk job ID: {job_id}")
    return await BulkJobManager(client).get_job_info(job_id, job_type)


async def get_job_record_results(
    client: SalesforceApiClient,
    job_id: str,
    cancel_event: Optional[asyncio.Event] = None,
) -> SalesforceResults:
    """Waits for an ingest job to finish and returns its per-record results."""
    manager = BulkJobManager(client)
    snapshot = await manager.get_job_info(job_id, JobType.INGEST)
    job = BulkJob(
        id=snapshot.id,
        operation=snapshot.operation or "",
        object=snapshot.object,
        state=snapshot.state,
        numberRecordsProcessed=snapshot.numberRecordsProcessed,
        numberRecordsFailed=snapshot.numberRecordsFailed,
        errorMessage=snapshot.errorMessage,
    )
    if not job.is_terminal:
        logger.info(f"Bulk job {job_id} is {job.state.value}. Waiting for it to finish before fetching results.")
        await manager.poll_until_terminal(job, cancel_event=cancel_event)
    manager.raise_for_failed_job(job)
    return await _collect_record_results(manager, job, cancel_event)


# --- Bulk query ---

async def create_query_iterator(client: SalesforceApiClient, query: str, operation: str = "query") -> BulkResultIterator:
    """Submits a Bulk API 2.0 query job and returns an iterator over its result pages."""
    logger.info(f"Starting Bulk API 2.0 query job with SOQL: {query[:100]}...")
    manager = BulkJobManager(client)
    job = await manager.create_query_job(query, operation)
    return BulkResultIterator(manager, job)


def build_model_query(model: Type[BaseModel], object_name: Optional[str] = None, conditions: Optional[str] = None) -> str:
    """
    Builds SELECT <fields> FROM <object> from a pydantic model, using field aliases as
    Salesforce API names. The object defaults to the model's SOBJECT_TYPE or class name.
    """
    fields = [field.alias or name for name, field in model.model_fields.items()]
    if not fields:
        raise ValidationError(f"Model {model.__name__} declares no fields to query.")
    sobject = object_name or getattr(model, "SOBJECT_TYPE", None) or model.__name__
    query = f"SELECT {', '.join(fields)} FROM {sobject}"
    if conditions:
        query = f"{query} WHERE {conditions}"
    return query


async def query_bulk_export(
    client: SalesforceApiClient,
    query: str,
    file_path: str,
    cancel_event: Optional[asyncio.Event] = None,
) -> int:
    """
    Runs a bulk query and writes every result page into one CSV file.
    The header is written once. Returns the number of records written.
    """
    iterator = await create_query_iterator(client, query)
    written = 0
    header_written = False
    with open(file_path, "w", newline="", encoding="utf-8") as export_file:
        writer = csv.writer(export_file, lineterminator="\n")
        while await iterator.advance(cancel_event):
            reader = csv.reader(StringIO(iterator.current_page.body))
            header = next(reader, None)
            if header and not header_written:
                writer.writerow(header)
                header_written = True
            for row in reader:
                if row:
                    writer.writerow(row)
                    written += 1
    if iterator.error is not None:
        logger.error(f"Bulk export to {file_path} stopped after {written} records: {iterator.error}")
        raise iterator.error
    logger.info(f"Exported {written} records from bulk query job {iterator.job.id} to {file_path}")
    return written


async def query_model_bulk_export(
    client: SalesforceApiClient,
    model: Type[BaseModel],
    file_path: str,
    object_name: Optional[str] = None,
    conditions: Optional[str] = None,
    cancel_event: Optional[asyncio.Event] = None,
) -> int:
    """Exports the records of a model's object; the SOQL comes from the model's fields."""
    return await query_bulk_export(client, build_model_query(model, object_name, conditions), file_path, cancel_event)


# --- sObject Collections (composite) ---

def _validate_collection_call(client: SalesforceApiClient, object_name: str, records: Sequence[Any], batch_size: int) -> None:
    if not object_name or not isinstance(object_name, str):
        raise ValidationError("object_name must be a non-empty string")
    validate_records(records)
    validate_batch_size(batch_size, client.config.BATCH_SIZE_MAX, "collection batch size")


def _collection_record(object_name: str, record: Any) -> Dict[str, Any]:
    field_map = to_field_map(record)
    field_map.pop("attributes", None)
    return {"attributes": {"type": object_name}, **field_map}


def _parse_collection_results(response: Any, stage: str) -> List[SalesforceResult]:
    if not isinstance(response, list):
        raise RemoteError(stage, None, str(response), message=f"Salesforce {stage} response is not a list of results.")
    try:
        return [SalesforceResult.model_validate(item) for item in response]
    except PydanticValidationError as e:
        raise RemoteError(stage, None, str(response), message=f"Unexpected {stage} result: {e}") from e


async def _send_collection_batches(
    client: SalesforceApiClient,
    method: str,
    uri: str,
    object_name: str,
    records: Sequence[Any],
    batch_size: int,
    stage: str,
) -> SalesforceResults:
    results = SalesforceResults()
    batches = partition_records(records, batch_size)
    for index, batch in enumerate(batches, start=1):
        payload = {"allOrNone": False, "records": [_collection_record(object_name, r) for r in batch]}
        response = await client.request_json(method, uri, body=payload, stage=stage)
        results.extend(_parse_collection_results(response, stage))
        logger.info(f"Collection {stage} batch {index}/{len(batches)} on {object_name}: {len(batch)} records sent.")
    if results.has_salesforce_errors:
        logger.warning(f"Collection {stage} on {object_name} finished with record errors.")
    return results


async def insert_collection(
    client: SalesforceApiClient, object_name: str, records: Sequence[Any], batch_size: int
) -> SalesforceResults:
    _validate_collection_call(client, object_name, records, batch_size)
    return await _send_collection_batches(client, "POST", "/composite/sobjects", object_name, records, batch_size, "insert")


async def update_collection(
    client: SalesforceApiClient, object_name: str, records: Sequence[Any], batch_size: int
) -> SalesforceResults:
    _validate_collection_call(client, object_name, records, batch_size)
    require_field(records, ID_FIELD)
    return await _send_collection_batches(client, "PATCH", "/composite/sobjects", object_name, records, batch_size, "update")


async def upsert_collection(
    client: SalesforceApiClient, object_name: str, external_id_field: str, records: Sequence[Any], batch_size: int
) -> SalesforceResults:
    _validate_collection_call(client, object_name, records, batch_size)
    if not external_id_field:
        raise ValidationError("external_id_field is required for upsert operation.")
    require_field(records, external_id_field)
    return await _send_collection_batches(
        client, "PATCH", f"/composite/sobjects/{object_name}/{external_id_field}",
        object_name, records, batch_size, "upsert",
    )


async def delete_collection(
    client: SalesforceApiClient, object_name: str, records: Sequence[Any], batch_size: int
) -> SalesforceResults:
    _validate_collection_call(client, object_name, records, batch_size)
    ids = [item[ID_FIELD] for item in extract_ids(records)]
    results = SalesforceResults()
    batches = partition_records(ids, batch_size)
    for index, batch in enumerate(batches, start=1):
        response = await client.request_json(
            "DELETE", "/composite/sobjects",
            params={"ids": ",".join(str(i) for i in batch), "allOrNone": "false"},
            stage="delete",
        )
        results.extend(_parse_collection_results(response, "delete"))
        logger.info(f"Collection delete batch {index}/{len(batches)} on {object_name}: {len(batch)} ids sent.")
    return results
