"""Record sources producing PatientIdentity values from CSV files or SQL queries."""
import csv
import os
from typing import Any, Dict, Iterator, Mapping, Optional, Tuple

from .config import (
    DEFAULT_ADDRESS_COLUMN,
    DEFAULT_DOB_COLUMN,
    DEFAULT_EMAIL_COLUMN,
    DEFAULT_FETCH_BATCH_SIZE,
    DEFAULT_ID_COLUMN,
    DEFAULT_NAME_COLUMN,
    DEFAULT_PHONE_COLUMN,
)
from .matching.models import PatientIdentity
from .secure_logging import get_secure_logger
from .sql_interface.db_interface import SQLInterface
from .sql_interface.exceptions import QueryExecutionError

logger = get_secure_logger(__name__)

# PatientIdentity attribute -> source column
DEFAULT_COLUMN_MAP: Dict[str, str] = {
    "record_id": DEFAULT_ID_COLUMN,
    "display_name": DEFAULT_NAME_COLUMN,
    "date_of_birth": DEFAULT_DOB_COLUMN,
    "phone": DEFAULT_PHONE_COLUMN,
    "email": DEFAULT_EMAIL_COLUMN,
    "address": DEFAULT_ADDRESS_COLUMN,
}


def resolve_column_map(overrides: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """Merge column overrides into the default map. Unknown attributes are rejected."""
    column_map = dict(DEFAULT_COLUMN_MAP)
    for attribute, column in (overrides or {}).items():
        if attribute not in column_map:
            raise ValueError(f"Unknown patient attribute '{attribute}' in column map")
        if column:
            column_map[attribute] = column
    return column_map


def _clean(value: Any) -> Any:
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


def row_to_identity(row: Mapping[str, Any], column_map: Mapping[str, str]) -> Optional[PatientIdentity]:
    """
    Map one source row onto a PatientIdentity.

    Returns None if the row carries no record id. Columns missing from the row
    become None, which the normalizer treats as absent.
    """
    values = {attribute: _clean(row.get(column)) for attribute, column in column_map.items()}
    record_id = values.pop("record_id")
    if record_id is None:
        return None
    return PatientIdentity(record_id=str(record_id), **values)


class CsvPatientSource:
    """
    Restartable CSV source. The file is opened anew on every iteration, so the
    same source can feed a full run and later a probe search.
    """

    def __init__(self, csv_file_path: str, column_map: Optional[Mapping[str, str]] = None,
                 encoding: str = 'utf-8-sig'):
        self.csv_file_path = csv_file_path
        self.column_map = resolve_column_map(column_map)
        self.encoding = encoding

    def __iter__(self) -> Iterator[PatientIdentity]:
        if not os.path.exists(self.csv_file_path):
            logger.error(f"CSV file not found: {self.csv_file_path}")
            return

        id_column = self.column_map["record_id"]
        rows_read = 0
        skipped = 0
        with open(self.csv_file_path, mode='r', encoding=self.encoding, newline='') as infile:  # utf-8-sig for BOM
            reader = csv.DictReader(infile)
            if not reader.fieldnames:
                logger.error(f"CSV file '{self.csv_file_path}' appears to be empty or improperly formatted.")
                return
            if id_column not in reader.fieldnames:
                logger.error(f"ID column '{id_column}' not found in CSV header. Available columns: {reader.fieldnames}")
                return
            missing = [c for a, c in self.column_map.items() if a != "record_id" and c not in reader.fieldnames]
            if missing:
                logger.warning(f"Columns not present in '{self.csv_file_path}', treated as absent: {missing}")

            for row_num, row in enumerate(reader, 1):
                rows_read += 1
                identity = row_to_identity(row, self.column_map)
                if identity is None:
                    skipped += 1
                    logger.warning(f"Missing or empty ID in CSV file '{self.csv_file_path}' at row {row_num}.")
                    continue
                yield identity

        logger.info(f"Read {rows_read - skipped} patient records from '{self.csv_file_path}' ({skipped} skipped).")


class SqlPatientSource:
    """Streams patient records from a SQL query in fetchmany() batches."""

    def __init__(self, db: SQLInterface, query: str, params: Tuple = (),
                 column_map: Optional[Mapping[str, str]] = None,
                 batch_size: int = DEFAULT_FETCH_BATCH_SIZE):
        self.db = db
        self.query = query
        self.params = params
        self.column_map = resolve_column_map(column_map)
        self.batch_size = batch_size

    def __iter__(self) -> Iterator[PatientIdentity]:
        if not self.db.execute_query(self.query, self.params):
            raise QueryExecutionError("Could not read the patient population")
        for row in self.db.iter_results(self.batch_size):
            identity = row_to_identity(row, self.column_map)
            if identity is None:
                logger.warning("Skipping population row without a record id.")
                continue
            yield identity
