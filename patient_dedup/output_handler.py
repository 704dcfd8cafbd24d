"""Output handling utilities for formatting and writing results."""
import io
import logging
import os
import sys
from typing import Any, Dict, List, Optional

from .config import DEFAULT_FILE_ENCODING, FILE_EXTENSION_MAP
from .output_formatter import OutputFormatter

logger = logging.getLogger(__name__)


def determine_output_format(user_format: Optional[str], output_file_path: Optional[str]) -> str:
    """Determines the effective output format based on user input and file extension."""
    if user_format:
        return user_format

    if output_file_path:
        _, ext = os.path.splitext(output_file_path)
        ext = ext.lower()

        if ext in FILE_EXTENSION_MAP:
            return FILE_EXTENSION_MAP[ext]
        if ext:
            logger.warning(
                f"Output file extension '{ext}' for '{output_file_path}' is not recognized. "
                f"Defaulting to 'json' format."
            )
        else:
            logger.warning(f"No file extension for '{output_file_path}'. Defaulting to 'json' format.")
        return 'json'

    return 'stdout'


def format_metadata_summary(metadata_dict: Optional[Dict[str, Any]]) -> str:
    """Format metadata dictionary as comment lines."""
    if not metadata_dict:
        return ''
    return '\n'.join(f"# {k}: {v}" for k, v in metadata_dict.items())


def render_output(
    results: List[Any],
    effective_format: str,
    metadata_dict: Optional[Dict[str, Any]] = None,
    output_formatter: Optional[OutputFormatter] = None,
) -> str:
    """Render results in one of the supported formats and return the text."""
    output_formatter = output_formatter or OutputFormatter()
    rows = output_formatter.to_rows(results)
    metadata_summary = format_metadata_summary(metadata_dict)

    if effective_format == 'json':
        return output_formatter.format_as_json(results, metadata_dict)
    if effective_format in ('csv', 'tsv'):
        body = output_formatter.format_as_csv(rows) if effective_format == 'csv' else output_formatter.format_as_tsv(rows)
        return f"{metadata_summary}\n{body}" if metadata_summary else body
    if effective_format == 'txt':
        # No metadata or headers for txt
        return output_formatter.format_as_txt(rows)
    if effective_format == 'stdout':
        buf = io.StringIO()
        if metadata_summary:
            buf.write(metadata_summary + '\n')
        output_formatter.format_as_console_table(rows, stream=buf)
        return buf.getvalue()
    raise ValueError(f"Unknown output format: {effective_format}")


def handle_output(
    results: List[Any],
    output_file_path: Optional[str],
    display_name: str,
    effective_format: str,
    metadata_dict: Optional[Dict[str, Any]] = None,
) -> bool:
    """
    Format results and write them to a file or stdout.

    Args:
        results: Match candidates or row dictionaries
        output_file_path: Path to save results to (None for stdout)
        display_name: Name of the action, for logging
        effective_format: 'json', 'csv', 'tsv', 'txt' or 'stdout'
        metadata_dict: Optional metadata dictionary to include

    Returns:
        bool: True if the output was written.
    """
    try:
        text = render_output(results, effective_format, metadata_dict)
        if output_file_path:
            with open(output_file_path, 'w', encoding=DEFAULT_FILE_ENCODING, newline='') as f:
                f.write(text)
            logger.info(f"Saved results for '{display_name}' to {output_file_path}")
        else:
            print(text, end='' if text.endswith('\n') else '\n')
        return True
    except ValueError as e:
        logger.error(str(e))
        print(str(e), file=sys.stderr)
    except OSError as e:
        logger.error(f"Error writing output for '{display_name}': {e}")
        print(f"Error during output handling: {e}", file=sys.stderr)
    return False
