# src/tests/test_iterator.py
import asyncio
from typing import Optional

import httpx
import pytest
from pydantic import BaseModel, Field

from sfdc_bulk.core.exceptions import BulkJobFailedError, CancellationError, RemoteError, ValidationError
from sfdc_bulk.core.schemas import BulkJob, JobState, JobType
from sfdc_bulk.salesforce.bulk import BulkJobManager
from sfdc_bulk.salesforce.iterator import BulkResultIterator, IteratorState

from conftest import csv_response, job_json

RESULTS_PATH = "/jobs/query/750Q/results"


class Account(BaseModel):
    id: str = Field(alias="Id")
    name: str = Field(alias="Name")
    employees: Optional[int] = Field(None, alias="NumberOfEmployees")


@pytest.fixture
def manager(api_client) -> BulkJobManager:
    return BulkJobManager(api_client)


def query_job(state: JobState = JobState.JOB_COMPLETE) -> BulkJob:
    return BulkJob(id="750Q", operation="query", state=state, job_type=JobType.QUERY)


def add_pages(fake_salesforce, locators):
    pages = []
    for index, locator in enumerate(locators):
        pages.append(csv_response(f"Id,Name\n001{index},Account {index}\n", locator=locator, count=1))
    fake_salesforce.add("GET", RESULTS_PATH, *pages)


async def test_follows_locators_until_null(manager, fake_salesforce):
    add_pages(fake_salesforce, ["abc", "def", "null"])
    iterator = BulkResultIterator(manager, query_job())

    names = []
    for _ in range(3):
        assert await iterator.advance() is True
        names.extend(record["Name"] for record in iterator.decode_current())
    assert await iterator.advance() is False

    assert iterator.error is None
    assert iterator.state == IteratorState.EXHAUSTED
    assert names == ["Account 0", "Account 1", "Account 2"]

    requests = fake_salesforce.calls("GET", RESULTS_PATH)
    assert len(requests) == 3
    assert "locator" not in requests[0].url.params
    assert requests[1].url.params["locator"] == "abc"
    assert requests[2].url.params["locator"] == "def"


@pytest.mark.parametrize("locator", ["", None])
async def test_empty_or_absent_locator_is_last_page(manager, fake_salesforce, locator):
    fake_salesforce.add("GET", RESULTS_PATH, csv_response("Id,Name\n0011,Acme\n", locator=locator))
    iterator = BulkResultIterator(manager, query_job())

    assert await iterator.advance() is True
    assert await iterator.advance() is False
    assert iterator.error is None
    assert len(fake_salesforce.requests) == 1


async def test_decode_current_into_model(manager, fake_salesforce):
    fake_salesforce.add("GET", RESULTS_PATH, csv_response("Id,Name,NumberOfEmployees\n0011,Acme,120\n0012,Globex,\n", locator="null", count=2))
    iterator = BulkResultIterator(manager, query_job())

    assert await iterator.advance()

    assert iterator.number_of_records == 2
    assert iterator.decode_current(Account) == [
        Account(Id="0011", Name="Acme", NumberOfEmployees=120),
        Account(Id="0012", Name="Globex", NumberOfEmployees=None),
    ]


async def test_decode_before_advance_is_an_error(manager):
    iterator = BulkResultIterator(manager, query_job())
    assert iterator.state == IteratorState.NOT_STARTED
    with pytest.raises(ValidationError):
        iterator.decode_current()


async def test_header_only_page_decodes_to_nothing(manager, fake_salesforce):
    fake_salesforce.add("GET", RESULTS_PATH, csv_response("Id,Name\n", locator="null", count=0))
    iterator = BulkResultIterator(manager, query_job())

    assert await iterator.advance() is True
    assert iterator.decode_current(Account) == []


async def test_waits_for_job_completion_before_first_page(manager, fake_salesforce):
    fake_salesforce.add(
        "GET", "/jobs/query/750Q",
        httpx.Response(200, json=job_json("750Q", "InProgress", operation="query")),
        httpx.Response(200, json=job_json("750Q", "JobComplete", operation="query")),
    )
    add_pages(fake_salesforce, ["null"])
    iterator = BulkResultIterator(manager, query_job(JobState.UPLOAD_COMPLETE))

    assert await iterator.advance() is True

    paths = [r.url.path.rsplit("/", 1)[-1] for r in fake_salesforce.requests]
    assert paths == ["750Q", "750Q", "results"]


async def test_failed_job_raises_before_fetching(manager, fake_salesforce):
    fake_salesforce.add("GET", "/jobs/query/750Q",
                        httpx.Response(200, json=job_json("750Q", "Failed", operation="query", errorMessage="INVALID_FIELD")))
    iterator = BulkResultIterator(manager, query_job(JobState.UPLOAD_COMPLETE))

    with pytest.raises(BulkJobFailedError):
        await iterator.advance()

    assert fake_salesforce.calls("GET", RESULTS_PATH) == []
    assert await iterator.advance() is False


async def test_fetch_failure_is_stored_not_raised(manager, fake_salesforce):
    fake_salesforce.add(
        "GET", RESULTS_PATH,
        csv_response("Id,Name\n0011,Acme\n", locator="abc"),
        httpx.Response(500, text="UNKNOWN_EXCEPTION"),
    )
    iterator = BulkResultIterator(manager, query_job())

    assert await iterator.advance() is True
    assert await iterator.advance() is False

    assert isinstance(iterator.error, RemoteError)
    assert iterator.error.stage == "results"
    assert await iterator.advance() is False
    assert len(fake_salesforce.requests) == 2


async def test_cancelled_iterator_issues_no_requests(manager, fake_salesforce):
    add_pages(fake_salesforce, ["abc", "null"])
    iterator = BulkResultIterator(manager, query_job())
    cancel_event = asyncio.Event()

    assert await iterator.advance(cancel_event) is True
    cancel_event.set()
    with pytest.raises(CancellationError):
        await iterator.advance(cancel_event)

    assert isinstance(iterator.error, CancellationError)
    assert len(fake_salesforce.requests) == 1


async def test_async_for_yields_pages(manager, fake_salesforce):
    add_pages(fake_salesforce, ["abc", "null"])
    iterator = BulkResultIterator(manager, query_job())

    pages = [page async for page in iterator]

    assert [page.locator for page in pages] == ["abc", ""]
    assert iterator.pages_fetched == 2


async def test_async_for_raises_fetch_error(manager, fake_salesforce):
    fake_salesforce.add("GET", RESULTS_PATH, httpx.Response(404, text="NOT_FOUND"))
    iterator = BulkResultIterator(manager, query_job())

    with pytest.raises(RemoteError):
        async for _ in iterator:
            pass
