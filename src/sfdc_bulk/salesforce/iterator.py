# src/sfdc_bulk/salesforce/iterator.py
import asyncio
import logging
from enum import Enum
from typing import List, Optional

from sfdc_bulk.core.config import settings
from sfdc_bulk.core.exceptions import CancellationError, RemoteError, SalesforceError, ValidationError
from sfdc_bulk.core.schemas import BulkJob, JobState, ResultPage
from sfdc_bulk.salesforce.bulk import BulkJobManager
from sfdc_bulk.salesforce.client import CSV_TYPE
from sfdc_bulk.utils.data_handler import DecodedRecord, parse_csv_string_to_records

logger = logging.getLogger(settings.APP_NAME)

LOCATOR_HEADER = "Sforce-Locator"
NUMBER_OF_RECORDS_HEADER = "Sforce-Numberofrecords"
NULL_LOCATOR = "null"  # Sent by Salesforce on the last page


class IteratorState(str, Enum):
    NOT_STARTED = "NotStarted"
    ACTIVE = "Active"
    EXHAUSTED = "Exhausted"


def _next_locator(value: Optional[str]) -> str:
    """Normalizes the locator header; "" means there is no further page."""
    if value is None:
        return ""
    value = value.strip()
    return "" if value == NULL_LOCATOR else value


def _record_count(value: Optional[str]) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except ValueError:
        logger.warning(f"Ignoring non-numeric {NUMBER_OF_RECORDS_HEADER} header: {value!r}")
        return None


class BulkResultIterator:
    """
    Lazily pages through the CSV results of a bulk job, one page at a time.

    The first `advance` waits for the job to reach JobComplete, then fetches page 1
    without a locator. Each later `advance` follows the locator of the previous page
    and returns False once the last page has been consumed. A failed fetch also
    returns False; `error` tells the two apart.

        iterator = await service.query_bulk_iterator("SELECT Id, Name FROM Account")
        while await iterator.advance():
            accounts = iterator.decode_current(Account)
        if iterator.error:
            raise iterator.error
    """

    def __init__(
        self,
        manager: BulkJobManager,
        job: BulkJob,
        results_path: Optional[str] = None,
        wait_for_completion: bool = True,
        poll_interval: Optional[float] = None,
        timeout: Optional[float] = None,
    ):
        self.manager = manager
        self.job = job
        self.results_path = results_path or f"/jobs/{job.job_type.value}/{job.id}/results"
        self.wait_for_completion = wait_for_completion
        self.poll_interval = poll_interval
        self.timeout = timeout

        self._state = IteratorState.NOT_STARTED
        self._locator = ""
        self._page: Optional[ResultPage] = None
        self._error: Optional[SalesforceError] = None
        self._pages_fetched = 0

    @property
    def state(self) -> IteratorState:
        return self._state

    @property
    def locator(self) -> str:
        return self._locator

    @property
    def current_page(self) -> Optional[ResultPage]:
        return self._page

    @property
    def number_of_records(self) -> Optional[int]:
        return self._page.number_of_records if self._page else None

    @property
    def error(self) -> Optional[SalesforceError]:
        """The error that stopped iteration, or None after a clean end."""
        return self._error

    @property
    def pages_fetched(self) -> int:
        return self._pages_fetched

    async def _wait_for_job(self, cancel_event: Optional[asyncio.Event]) -> None:
        if self.job.state == JobState.JOB_COMPLETE:
            return
        await self.manager.poll_until_terminal(
            self.job, interval=self.poll_interval, cancel_event=cancel_event, timeout=self.timeout
        )
        self.manager.raise_for_failed_job(self.job)

    async def _fetch_page(self, locator: str) -> ResultPage:
        params = {"locator": locator} if locator else None
        response = await self.manager.client.request(
            "GET", self.results_path, params=params, accept=CSV_TYPE, stage="results"
        )
        return ResultPage(
            locator=_next_locator(response.headers.get(LOCATOR_HEADER)),
            number_of_records=_record_count(response.headers.get(NUMBER_OF_RECORDS_HEADER)),
            body=response.text,
        )

    async def advance(self, cancel_event: Optional[asyncio.Event] = None) -> bool:
        """
        Fetches the next page. Returns True when a (possibly empty) page was fetched.

        Raises:
            CancellationError: `cancel_event` is set, or was set while waiting for the job.
            BulkJobFailedError: the job ended Aborted or Failed before the first page.
        """
        if self._state == IteratorState.EXHAUSTED:
            return False
        if cancel_event is not None and cancel_event.is_set():
            self._state = IteratorState.EXHAUSTED
            self._page = None
            self._error = CancellationError(f"Result iteration for bulk job {self.job.id} was cancelled.")
            logger.warning(f"Result iteration for bulk job {self.job.id} cancelled after {self._pages_fetched} pages.")
            raise self._error

        if self._state == IteratorState.NOT_STARTED and self.wait_for_completion:
            try:
                await self._wait_for_job(cancel_event)
            except SalesforceError as e:
                self._state = IteratorState.EXHAUSTED
                self._error = e
                raise

        try:
            page = await self._fetch_page(self._locator)
        except RemoteError as e:
            logger.error(f"Fetching result page {self._pages_fetched + 1} of bulk job {self.job.id} failed: {e}")
            self._state = IteratorState.EXHAUSTED
            self._page = None
            self._error = e
            return False

        self._pages_fetched += 1
        self._page = page
        self._locator = page.locator
        self._state = IteratorState.EXHAUSTED if page.is_last else IteratorState.ACTIVE
        logger.info(
            f"Fetched result page {self._pages_fetched} of bulk job {self.job.id} "
            f"({page.number_of_records} records, last page: {page.is_last})"
        )
        return True

    def decode_current(self, model: Optional[type] = None) -> List[DecodedRecord]:
        """Decodes the most recently fetched page into a pydantic model or dataclass. Dicts of strings without a model."""
        if self._page is None:
            raise ValidationError("decode_current() called before a successful advance().")
        return parse_csv_string_to_records(self._page.body, model)

    def __aiter__(self) -> "BulkResultIterator":
        return self

    async def __anext__(self) -> ResultPage:
        if await self.advance():
            return self._page
        if self._error is not None:
            raise self._error
        raise StopAsyncIteration
