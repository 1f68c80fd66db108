# src/sfdc_bulk/utils/data_handler.py
import csv
import dataclasses
import json
import logging
from datetime import date, datetime
from io import StringIO
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, TextIO, Tuple, Type, TypeVar, Union

from pydantic import BaseModel, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from sfdc_bulk.core.config import settings
from sfdc_bulk.core.exceptions import FileParsingError, ValidationError
from sfdc_bulk.utils.batching import to_field_map

logger = logging.getLogger(settings.APP_NAME)

ModelT = TypeVar("ModelT")  # a pydantic model or a dataclass
DecodedRecord = Any  # dict of strings, or an instance of the requested model


def _format_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def convert_records_to_csv_string(records: Sequence[Any], field_order: Optional[List[str]] = None) -> str:
    """
    Converts a list of records into a CSV formatted string.
    If field_order is provided, it dictates the columns; missing fields are written empty
    and extra fields are ignored. Otherwise the columns come from the first record and every
    record must expose exactly that field set.
    """
    if not records:
        return ""

    rows = [to_field_map(record) for record in records]
    fieldnames = list(field_order) if field_order else list(rows[0].keys())
    if not fieldnames:
        return ""

    if not field_order:
        expected = set(fieldnames)
        for index, row in enumerate(rows):
            if set(row.keys()) != expected:
                raise ValidationError(
                    f"Record {index} fields {sorted(row.keys())} do not match the header {fieldnames}."
                )

    output = StringIO()
    # Use LF line terminator as recommended for Salesforce Bulk API
    writer = csv.DictWriter(output, fieldnames=fieldnames, lineterminator='\n', extrasaction='ignore')
    writer.writeheader()
    for row in rows:
        writer.writerow({name: _format_value(row.get(name)) for name in fieldnames})

    return output.getvalue()


def _decode_fields(model: type) -> Dict[str, Tuple[str, bool]]:
    """
    Maps CSV column names (alias or attribute name) to the key the destination validates,
    flagging plain `str` fields.
    """
    lookup: Dict[str, Tuple[str, bool]] = {}
    if dataclasses.is_dataclass(model):
        for field in dataclasses.fields(model):
            lookup[field.name] = (field.name, field.type in (str, "str"))
        return lookup
    for name, field in model.model_fields.items():
        key = field.alias or name
        lookup[name] = lookup[key] = (key, field.annotation is str)
    return lookup


def _row_to_model(
    model: Type[ModelT], adapter: TypeAdapter, lookup: Dict[str, Tuple[str, bool]], row: Dict[Optional[str], Any], line: int
) -> ModelT:
    values: Dict[str, Any] = {}
    for column, raw in row.items():
        if column is None:
            continue  # surplus cells without a header
        spec = lookup.get(column)
        if spec is None:
            continue
        key, plain_str = spec
        if raw is None or raw == "":
            values[key] = "" if plain_str else None
        else:
            values[key] = raw
    try:
        return adapter.validate_python(values)
    except PydanticValidationError as e:
        raise ValidationError(f"CSV row {line} cannot be decoded into {model.__name__}: {e}") from e


def iter_csv_records(stream: Union[TextIO, Iterable[str]], model: Optional[Type[ModelT]] = None) -> Iterator[DecodedRecord]:
    """
    Streams records from CSV text whose first row is the header.
    Without a model each record is a dict of strings. With a pydantic model or a dataclass,
    unknown columns are skipped and values are coerced to the declared field types.
    """
    reader = csv.DictReader(stream)
    if model is None:
        for row in reader:
            yield {k: v for k, v in row.items() if k is not None}
        return

    if not (dataclasses.is_dataclass(model) or (isinstance(model, type) and issubclass(model, BaseModel))):
        raise ValidationError(f"Cannot decode CSV rows into {model!r}: expected a pydantic model or a dataclass.")
    adapter = TypeAdapter(model)
    lookup = _decode_fields(model)
    for line, row in enumerate(reader, start=2):
        yield _row_to_model(model, adapter, lookup, row, line)


def parse_csv_string_to_records(csv_string: str, model: Optional[Type[ModelT]] = None) -> List[DecodedRecord]:
    """
    Parses a CSV formatted string into a list of records.
    A header-only or empty body yields an empty list.
    """
    if not csv_string or not csv_string.strip():
        return []
    return list(iter_csv_records(StringIO(csv_string), model))


def split_csv_body(body: str, batch_size: int) -> List[str]:
    """
    Splits a CSV body into bodies of at most `batch_size` data rows, each repeating the header.
    Quoted fields spanning lines are kept intact.
    """
    if batch_size < 1:
        raise ValidationError(f"batch size must be at least 1, got {batch_size}.")
    reader = csv.reader(StringIO(body))
    header = next(reader, None)
    if not header:
        return []

    chunks: List[str] = []
    output: Optional[StringIO] = None
    writer = None
    rows_in_chunk = 0
    for row in reader:
        if not row:
            continue
        if output is None or rows_in_chunk == batch_size:
            if output is not None:
                chunks.append(output.getvalue())
            output = StringIO()
            writer = csv.writer(output, lineterminator='\n')
            writer.writerow(header)
            rows_in_chunk = 0
        writer.writerow(row)
        rows_in_chunk += 1
    if output is not None:
        chunks.append(output.getvalue())
    return chunks


def _read_text(file_path: str) -> str:
    try:
        with open(file_path, 'rb') as f_bytes:  # Read as bytes first for robust decoding
            content_bytes = f_bytes.read()
    except FileNotFoundError as e:
        logger.error(f"Local file not found: {file_path}")
        raise FileParsingError(f"Local file not found: {file_path}") from e
    except OSError as e:
        logger.error(f"Could not read local file {file_path}: {e}")
        raise FileParsingError(f"Could not read local file {file_path}: {e}") from e

    try:
        return content_bytes.decode('utf-8-sig')  # Handle BOM
    except UnicodeDecodeError:
        return content_bytes.decode('latin-1')


def read_csv_file_body(file_path: str) -> str:
    """
    Reads a pre-encoded CSV body from disk for file-sourced bulk uploads.
    The file must hold a header row and at least one data row.
    """
    logger.info(f"Reading CSV body from local file: {file_path}")
    body = _read_text(file_path)
    reader = csv.reader(StringIO(body))
    header = next(reader, None)
    if not header or not any(row for row in reader):
        raise ValidationError(f"CSV file {file_path} is empty or contains only headers.")
    return body


def read_data_from_local_file(file_path: str) -> List[Dict[str, Any]]:
    """
    Reads records from a local CSV or JSON file.
    CSV empty values become None; JSON must be a list of records or {"records": [...]}.
    """
    records: List[Dict[str, Any]] = []
    logger.info(f"Reading data from local file: {file_path}")

    lower_path = file_path.lower()
    if lower_path.endswith('.csv'):
        decoded_content = _read_text(file_path)
        try:
            reader = csv.DictReader(StringIO(decoded_content))
            for row in reader:
                cleaned_row = {k: (v if v != "" else None) for k, v in row.items() if k is not None}
                records.append(cleaned_row)
        except csv.Error as csve:
            raise FileParsingError(f"Invalid CSV in local file {file_path}: {str(csve)}") from csve

    elif lower_path.endswith('.json'):
        decoded_content = _read_text(file_path)
        try:
            data = json.loads(decoded_content)
        except json.JSONDecodeError as jde:
            logger.error(f"JSON decoding error for file {file_path}: {jde.msg} at line {jde.lineno} col {jde.colno}")
            raise FileParsingError(f"Invalid JSON in local file {file_path}: {jde.msg}") from jde
        if isinstance(data, list):
            records = data
        elif isinstance(data, dict) and 'records' in data and isinstance(data['records'], list):
            records = data['records']
        else:
            raise FileParsingError("Invalid JSON structure in local file: expected a list of records or a 'records' key.")

    else:
        raise FileParsingError(f"Unsupported local file type: {file_path}. Only CSV and JSON supported.")

    logger.info(f"Successfully parsed {len(records)} records from local file: {file_path}")
    return records
