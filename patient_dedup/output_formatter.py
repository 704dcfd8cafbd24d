import csv
import io
import json
import logging
import sys
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional, TextIO

from tabulate import tabulate

from .matching.models import MatchCandidate

logger = logging.getLogger(__name__)

# Columns shown in the console table; the remaining detail goes to file formats
CONSOLE_COLUMNS = ['record_id_a', 'record_id_b', 'composite_score', 'confidence_level', 'status', 'match_reasons']


class OutputFormatter:
    """Formats match candidates (or plain row dictionaries) for display or saving."""

    @staticmethod
    def candidate_to_row(candidate: MatchCandidate) -> Dict[str, Any]:
        """Flatten a MatchCandidate into one row with per-field columns."""
        row = {
            'candidate_id': candidate.candidate_id,
            'record_id_a': candidate.record_id_a,
            'record_id_b': candidate.record_id_b,
            'composite_score': candidate.composite_score,
            'confidence_level': candidate.confidence_level.value,
            'status': candidate.status.value,
            'revision': candidate.revision,
            'supersedes': candidate.supersedes,
            'decided_by': candidate.decided_by,
            'match_reasons': '; '.join(candidate.match_reasons),
        }
        for result in candidate.field_results:
            prefix = result.field_name
            row[f"{prefix}_matched"] = result.matched
            row[f"{prefix}_score"] = result.score
            row[f"{prefix}_reason"] = result.reason.value
        return row

    @staticmethod
    def to_rows(data: List[Any]) -> List[Dict[str, Any]]:
        return [
            OutputFormatter.candidate_to_row(item) if isinstance(item, MatchCandidate) else item
            for item in data
        ]

    @staticmethod
    def _datetime_serializer(obj: Any) -> Any:
        """
        Custom serializer for converting datetime.datetime and datetime.date
        objects into ISO 8601 string format for JSON compatibility.
        """
        if isinstance(obj, (datetime, date)):
            return obj.isoformat()
        if isinstance(obj, Enum):
            return obj.value
        raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")

    @staticmethod
    def format_as_json(data_payload: List[Any], metadata: Optional[Dict[str, Any]] = None,
                       indent: Optional[int] = 4) -> str:
        """
        Formats the data payload and metadata into a structured JSON string.

        The output JSON has two top-level keys: "metadata" and "data". Match
        candidates are written with their full per-field breakdown.

        Raises:
            TypeError: If the data contains non-serializable types.
        """
        data = [item.to_dict() if isinstance(item, MatchCandidate) else item for item in data_payload]
        structured_output = {
            "metadata": metadata or {},
            "data": data,
        }
        try:
            return json.dumps(structured_output, default=OutputFormatter._datetime_serializer, indent=indent)
        except (TypeError, ValueError) as e:
            logger.error(f"Error during JSON serialization: {e}")
            raise

    @staticmethod
    def format_as_csv(data: List[Dict[str, Any]], delimiter: str = ',') -> str:
        """Formats the rows into a CSV string. The header is the union of all row keys."""
        if not data:
            return ""
        fieldnames: List[str] = []
        for row in data:
            for key in row:
                if key not in fieldnames:
                    fieldnames.append(key)
        output = io.StringIO()
        writer = csv.DictWriter(output, fieldnames=fieldnames, delimiter=delimiter)
        writer.writeheader()
        writer.writerows(data)
        return output.getvalue()

    @staticmethod
    def format_as_tsv(data: List[Dict[str, Any]]) -> str:
        """Formats the rows into a TSV string."""
        return OutputFormatter.format_as_csv(data, delimiter='\t')

    @staticmethod
    def format_as_txt(data: List[Dict[str, Any]]) -> str:
        """One line per row: the pair, its score and level, then the reasons."""
        lines = []
        for row in data:
            if 'record_id_a' in row and 'record_id_b' in row:
                line = (f"{row['record_id_a']} <-> {row['record_id_b']}  "
                        f"{row.get('composite_score')} {row.get('confidence_level')} [{row.get('status')}]")
                if row.get('match_reasons'):
                    line += f"  {row['match_reasons']}"
            else:
                line = '\t'.join(str(v) for v in row.values() if v is not None)
            lines.append(line)
        return '\n'.join(lines)

    @staticmethod
    def format_as_console_table(data: List[Dict[str, Any]], stream: TextIO = sys.stdout) -> None:
        """Prints the rows as a grid table using tabulate."""
        if not data:
            print("No matching candidates.", file=stream)
            return
        if all(column in data[0] for column in CONSOLE_COLUMNS):
            table = [{column: row.get(column) for column in CONSOLE_COLUMNS} for row in data]
        else:
            table = data
        print(tabulate(table, headers="keys", tablefmt="grid"), file=stream)
