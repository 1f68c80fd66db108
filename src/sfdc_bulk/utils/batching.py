# src/sfdc_bulk/utils/batching.py
import dataclasses
import logging
from collections.abc import Mapping
from typing import Any, Dict, List, Sequence

from pydantic import BaseModel

from sfdc_bulk.core.config import settings
from sfdc_bulk.core.exceptions import ValidationError

logger = logging.getLogger(settings.APP_NAME)

ID_FIELD = "Id"


def is_record_like(value: Any) -> bool:
    """A record is a mapping, a pydantic model instance or a dataclass instance."""
    if isinstance(value, Mapping) or isinstance(value, BaseModel):
        return True
    return dataclasses.is_dataclass(value) and not isinstance(value, type)


def to_field_map(record: Any) -> Dict[str, Any]:
    """
    Converts a record into an ordered field-name -> value mapping.
    Pydantic models are dumped by alias so Salesforce API names can be declared as aliases.
    """
    if isinstance(record, Mapping):
        field_map = dict(record)
    elif isinstance(record, BaseModel):
        field_map = record.model_dump(by_alias=True)
    elif dataclasses.is_dataclass(record) and not isinstance(record, type):
        field_map = dataclasses.asdict(record)
    else:
        raise ValidationError(f"Record must be a mapping, pydantic model or dataclass, got {type(record).__name__}.")

    for key in field_map:
        if not isinstance(key, str):
            raise ValidationError(f"Record field names must be strings, got {key!r}.")
    return field_map


def validate_records(records: Any) -> None:
    """
    Checks that `records` is a list or tuple of record-like values of a single kind:
    all mappings, or all instances of the same model/dataclass type.
    """
    if not isinstance(records, (list, tuple)):
        raise ValidationError(f"Records must be a list of records, got {type(records).__name__}.")
    if not records:
        return

    first = records[0]
    if not is_record_like(first):
        raise ValidationError(f"Records must be mappings, pydantic models or dataclasses, got {type(first).__name__}.")

    first_is_mapping = isinstance(first, Mapping)
    for index, record in enumerate(records):
        if first_is_mapping:
            if not isinstance(record, Mapping):
                raise ValidationError(f"Record {index} is a {type(record).__name__}; expected a mapping like record 0.")
        elif type(record) is not type(first):
            raise ValidationError(
                f"Record {index} is a {type(record).__name__}; expected {type(first).__name__} like record 0."
            )


def validate_batch_size(batch_size: int, max_size: int, label: str = "batch size") -> None:
    if isinstance(batch_size, bool) or not isinstance(batch_size, int):
        raise ValidationError(f"{label} must be an integer, got {batch_size!r}.")
    if batch_size < 1 or batch_size > max_size:
        raise ValidationError(f"{label} must be between 1 and {max_size}, got {batch_size}.")


def partition_records(records: Sequence[Any], batch_size: int) -> List[List[Any]]:
    """
    Splits `records` into ceil(len/batch_size) ordered batches.
    Every batch holds `batch_size` records except possibly the last one.
    """
    if batch_size < 1:
        raise ValidationError(f"batch size must be at least 1, got {batch_size}.")
    batches = [list(records[start:start + batch_size]) for start in range(0, len(records), batch_size)]
    logger.debug(f"Partitioned {len(records)} records into {len(batches)} batches of up to {batch_size}.")
    return batches


def require_field(records: Sequence[Any], field_name: str) -> None:
    """Every record must carry a non-empty value for `field_name`."""
    for index, record in enumerate(records):
        value = to_field_map(record).get(field_name)
        if value is None or (isinstance(value, str) and not value.strip()):
            raise ValidationError(f"Record {index} is missing a value for required field '{field_name}'.")


def extract_ids(records: Sequence[Any], id_field: str = ID_FIELD) -> List[Dict[str, Any]]:
    """Projects every record to {"Id": value}; used so deletes upload identifiers only."""
    require_field(records, id_field)
    return [{ID_FIELD: to_field_map(record)[id_field]} for record in records]
