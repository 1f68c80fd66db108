# src/sfdc_bulk/salesforce/service.py
import asyncio
import logging
from typing import Any, Optional, Sequence, Type

import httpx
from pydantic import BaseModel

from sfdc_bulk.core.config import Settings, settings
from sfdc_bulk.core.schemas import BulkJobOutcome, BulkJobResults, BulkOperation, JobType, SalesforceResults
from sfdc_bulk.salesforce import operations
from sfdc_bulk.salesforce.auth import get_salesforce_auth_instance
from sfdc_bulk.salesforce.client import AuthProvider, SalesforceApiClient
from sfdc_bulk.salesforce.iterator import BulkResultIterator

logger = logging.getLogger(settings.APP_NAME)


class SalesforceBulkService:
    """
    Entry point for bulk and collection operations against one Salesforce org.

        async with SalesforceBulkService() as sf:
            outcome = await sf.insert_bulk("Account", accounts, wait_for_results=True)

    Without `auth_instance` the provider is built from configuration. An HTTP client
    created here is closed by `aclose`; one passed in is left to its owner.
    """

    def __init__(
        self,
        auth_instance: Optional[AuthProvider] = None,
        config: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config or settings
        self.auth = auth_instance or get_salesforce_auth_instance(self.config)
        self._owns_http_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=self.config.HTTP_TIMEOUT)
        self.client = SalesforceApiClient(self.auth, self.config, self.http_client)

    async def __aenter__(self) -> "SalesforceBulkService":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http_client and not self.http_client.is_closed:
            await self.http_client.aclose()
            logger.debug("Closed Salesforce HTTP client.")

    def _bulk_batch_size(self, batch_size: Optional[int]) -> int:
        return self.config.BULK_BATCH_SIZE_MAX if batch_size is None else batch_size

    def _collection_batch_size(self, batch_size: Optional[int]) -> int:
        return self.config.BATCH_SIZE_MAX if batch_size is None else batch_size

    async def _bulk(
        self,
        operation: BulkOperation,
        object_name: str,
        records: Sequence[Any],
        batch_size: Optional[int],
        wait_for_results: bool,
        fetch_results: bool,
        external_id_field: Optional[str] = None,
        assignment_rule_id: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> BulkJobOutcome:
        return await operations.perform_bulk_operation(
            self.client, object_name, operation.value, records, self._bulk_batch_size(batch_size),
            wait_for_results=wait_for_results,
            fetch_results=fetch_results,
            external_id_field=external_id_field,
            assignment_rule_id=assignment_rule_id,
            cancel_event=cancel_event,
        )

    async def _bulk_file(
        self,
        operation: BulkOperation,
        object_name: str,
        file_path: str,
        batch_size: Optional[int],
        wait_for_results: bool,
        fetch_results: bool,
        external_id_field: Optional[str] = None,
        assignment_rule_id: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> BulkJobOutcome:
        return await operations.perform_bulk_file_operation(
            self.client, object_name, operation.value, file_path, self._bulk_batch_size(batch_size),
            wait_for_results=wait_for_results,
            fetch_results=fetch_results,
            external_id_field=external_id_field,
            assignment_rule_id=assignment_rule_id,
            cancel_event=cancel_event,
        )

    # --- Bulk, in-memory records ---

    async def insert_bulk(
        self, object_name: str, records: Sequence[Any], batch_size: Optional[int] = None,
        wait_for_results: bool = False, fetch_results: bool = False, cancel_event: Optional[asyncio.Event] = None,
    ) -> BulkJobOutcome:
        return await self._bulk(BulkOperation.INSERT, object_name, records, batch_size, wait_for_results, fetch_results,
                                cancel_event=cancel_event)

    async def update_bulk(
        self, object_name: str, records: Sequence[Any], batch_size: Optional[int] = None,
        wait_for_results: bool = False, fetch_results: bool = False, cancel_event: Optional[asyncio.Event] = None,
    ) -> BulkJobOutcome:
        return await self._bulk(BulkOperation.UPDATE, object_name, records, batch_size, wait_for_results, fetch_results,
                                cancel_event=cancel_event)

    async def upsert_bulk(
        self, object_name: str, external_id_field: str, records: Sequence[Any], batch_size: Optional[int] = None,
        wait_for_results: bool = False, fetch_results: bool = False, cancel_event: Optional[asyncio.Event] = None,
    ) -> BulkJobOutcome:
        return await self._bulk(BulkOperation.UPSERT, object_name, records, batch_size, wait_for_results, fetch_results,
                                external_id_field=external_id_field, cancel_event=cancel_event)

    async def delete_bulk(
        self, object_name: str, records: Sequence[Any], batch_size: Optional[int] = None,
        wait_for_results: bool = False, fetch_results: bool = False, cancel_event: Optional[asyncio.Event] = None,
    ) -> BulkJobOutcome:
        return await self._bulk(BulkOperation.DELETE, object_name, records, batch_size, wait_for_results, fetch_results,
                                cancel_event=cancel_event)

    # Assignment rules only apply to Lead and Case

    async def insert_bulk_assign(
        self, object_name: str, records: Sequence[Any], assignment_rule_id: str, batch_size: Optional[int] = None,
        wait_for_results: bool = False, fetch_results: bool = False, cancel_event: Optional[asyncio.Event] = None,
    ) -> BulkJobOutcome:
        return await self._bulk(BulkOperation.INSERT, object_name, records, batch_size, wait_for_results, fetch_results,
                                assignment_rule_id=assignment_rule_id, cancel_event=cancel_event)

    async def update_bulk_assign(
        self, object_name: str, records: Sequence[Any], assignment_rule_id: str, batch_size: Optional[int] = None,
        wait_for_results: bool = False, fetch_results: bool = False, cancel_event: Optional[asyncio.Event] = None,
    ) -> BulkJobOutcome:
        return await self._bulk(BulkOperation.UPDATE, object_name, records, batch_size, wait_for_results, fetch_results,
                                assignment_rule_id=assignment_rule_id, cancel_event=cancel_event)

    async def upsert_bulk_assign(
        self, object_name: str, external_id_field: str, records: Sequence[Any], assignment_rule_id: str,
        batch_size: Optional[int] = None, wait_for_results: bool = False, fetch_results: bool = False,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> BulkJobOutcome:
        return await self._bulk(BulkOperation.UPSERT, object_name, records, batch_size, wait_for_results, fetch_results,
                                external_id_field=external_id_field, assignment_rule_id=assignment_rule_id,
                                cancel_event=cancel_event)

    # --- Bulk, file-sourced ---

    async def insert_bulk_file(
        self, object_name: str, file_path: str, batch_size: Optional[int] = None,
        wait_for_results: bool = False, fetch_results: bool = False, cancel_event: Optional[asyncio.Event] = None,
    ) -> BulkJobOutcome:
        return await self._bulk_file(BulkOperation.INSERT, object_name, file_path, batch_size, wait_for_results,
                                     fetch_results, cancel_event=cancel_event)

    async def update_bulk_file(
        self, object_name: str, file_path: str, batch_size: Optional[int] = None,
        wait_for_results: bool = False, fetch_results: bool = False, cancel_event: Optional[asyncio.Event] = None,
    ) -> BulkJobOutcome:
        return await self._bulk_file(BulkOperation.UPDATE, object_name, file_path, batch_size, wait_for_results,
                                     fetch_results, cancel_event=cancel_event)

    async def upsert_bulk_file(
        self, object_name: str, external_id_field: str, file_path: str, batch_size: Optional[int] = None,
        wait_for_results: bool = False, fetch_results: bool = False, cancel_event: Optional[asyncio.Event] = None,
    ) -> BulkJobOutcome:
        return await self._bulk_file(BulkOperation.UPSERT, object_name, file_path, batch_size, wait_for_results,
                                     fetch_results, external_id_field=external_id_field, cancel_event=cancel_event)

    async def delete_bulk_file(
        self, object_name: str, file_path: str, batch_size: Optional[int] = None,
        wait_for_results: bool = False, fetch_results: bool = False, cancel_event: Optional[asyncio.Event] = None,
    ) -> BulkJobOutcome:
        return await self._bulk_file(BulkOperation.DELETE, object_name, file_path, batch_size, wait_for_results,
                                     fetch_results, cancel_event=cancel_event)

    async def insert_bulk_file_assign(
        self, object_name: str, file_path: str, assignment_rule_id: str, batch_size: Optional[int] = None,
        wait_for_results: bool = False, fetch_results: bool = False, cancel_event: Optional[asyncio.Event] = None,
    ) -> BulkJobOutcome:
        return await self._bulk_file(BulkOperation.INSERT, object_name, file_path, batch_size, wait_for_results,
                                     fetch_results, assignment_rule_id=assignment_rule_id, cancel_event=cancel_event)

    async def update_bulk_file_assign(
        self, object_name: str, file_path: str, assignment_rule_id: str, batch_size: Optional[int] = None,
        wait_for_results: bool = False, fetch_results: bool = False, cancel_event: Optional[asyncio.Event] = None,
    ) -> BulkJobOutcome:
        return await self._bulk_file(BulkOperation.UPDATE, object_name, file_path, batch_size, wait_for_results,
                                     fetch_results, assignment_rule_id=assignment_rule_id, cancel_event=cancel_event)

    async def upsert_bulk_file_assign(
        self, object_name: str, external_id_field: str, file_path: str, assignment_rule_id: str,
        batch_size: Optional[int] = None, wait_for_results: bool = False, fetch_results: bool = False,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> BulkJobOutcome:
        return await self._bulk_file(BulkOperation.UPSERT, object_name, file_path, batch_size, wait_for_results,
                                     fetch_results, external_id_field=external_id_field,
                                     assignment_rule_id=assignment_rule_id, cancel_event=cancel_event)

    # --- Query and job inspection ---

    async def query_bulk_iterator(self, query: str, operation: str = "query") -> BulkResultIterator:
        return await operations.create_query_iterator(self.client, query, operation)

    async def query_bulk_export(self, query: str, file_path: str, cancel_event: Optional[asyncio.Event] = None) -> int:
        return await operations.query_bulk_export(self.client, query, file_path, cancel_event)

    async def query_model_bulk_export(
        self, model: Type[BaseModel], file_path: str, object_name: Optional[str] = None,
        conditions: Optional[str] = None, cancel_event: Optional[asyncio.Event] = None,
    ) -> int:
        return await operations.query_model_bulk_export(self.client, model, file_path, object_name, conditions, cancel_event)

    async def get_job_results(self, job_id: str, job_type: JobType = JobType.INGEST) -> BulkJobResults:
        return await operations.get_job_results(self.client, job_id, job_type)

    async def get_job_record_results(self, job_id: str, cancel_event: Optional[asyncio.Event] = None) -> SalesforceResults:
        return await operations.get_job_record_results(self.client, job_id, cancel_event)

    # --- sObject Collections ---

    async def insert_collection(self, object_name: str, records: Sequence[Any], batch_size: Optional[int] = None) -> SalesforceResults:
        return await operations.insert_collection(self.client, object_name, records, self._collection_batch_size(batch_size))

    async def update_collection(self, object_name: str, records: Sequence[Any], batch_size: Optional[int] = None) -> SalesforceResults:
        return await operations.update_collection(self.client, object_name, records, self._collection_batch_size(batch_size))

    async def upsert_collection(
        self, object_name: str, external_id_field: str, records: Sequence[Any], batch_size: Optional[int] = None
    ) -> SalesforceResults:
        return await operations.upsert_collection(
            self.client, object_name, external_id_field, records, self._collection_batch_size(batch_size)
        )

    async def delete_collection(self, object_name: str, records: Sequence[Any], batch_size: Optional[int] = None) -> SalesforceResults:
        return await operations.delete_collection(self.client, object_name, records, self._collection_batch_size(batch_size))
