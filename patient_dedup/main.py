"""Command-line entry point for the patient_dedup package."""
import argparse
import logging
import os
import signal
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from dotenv import load_dotenv

from .config import (
    DEFAULT_ADDRESS_COLUMN,
    DEFAULT_DOB_COLUMN,
    DEFAULT_EMAIL_COLUMN,
    DEFAULT_ID_COLUMN,
    DEFAULT_LEDGER_TABLE,
    DEFAULT_NAME_COLUMN,
    DEFAULT_PHONE_COLUMN,
    LOGGER_NAME,
    STATUS_SUCCESS,
    STATUS_SUCCESS_NO_DATA,
    VALID_OUTPUT_FORMATS,
    VALID_RERUN_POLICIES,
    MatchingConfig,
    load_config,
)
from .exceptions import ConfigurationError, DeduplicationError
from .matching import DeduplicationPipeline, InMemoryMatchLedger, PatientIdentity, ReviewStatus
from .matching.ledger import MatchReviewLedger
from .matching.pipeline import RunReport
from .metadata import create_metadata_dict
from .output_handler import determine_output_format, handle_output
from .secure_logging import configure_secure_logging, get_secure_logger
from .sources import CsvPatientSource
from .sql_interface import SQLInterface, SqlMatchLedger
from .sql_interface.exceptions import DatabaseConnectionError, QueryExecutionError

PROBE_RECORD_ID = "__probe__"


def _add_column_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument('--id-column', '-idc', default=DEFAULT_ID_COLUMN, metavar='COLUMN_NAME',
                        help=f'CSV column holding the record id (default: "{DEFAULT_ID_COLUMN}").')
    parser.add_argument('--name-column', default=DEFAULT_NAME_COLUMN, metavar='COLUMN_NAME',
                        help=f'CSV column holding the full name (default: "{DEFAULT_NAME_COLUMN}").')
    parser.add_argument('--dob-column', default=DEFAULT_DOB_COLUMN, metavar='COLUMN_NAME',
                        help=f'CSV column holding the date of birth (default: "{DEFAULT_DOB_COLUMN}").')
    parser.add_argument('--phone-column', default=DEFAULT_PHONE_COLUMN, metavar='COLUMN_NAME',
                        help=f'CSV column holding the phone number (default: "{DEFAULT_PHONE_COLUMN}").')
    parser.add_argument('--email-column', default=DEFAULT_EMAIL_COLUMN, metavar='COLUMN_NAME',
                        help=f'CSV column holding the e-mail address (default: "{DEFAULT_EMAIL_COLUMN}").')
    parser.add_argument('--address-column', default=DEFAULT_ADDRESS_COLUMN, metavar='COLUMN_NAME',
                        help=f'CSV column holding the postal address (default: "{DEFAULT_ADDRESS_COLUMN}").')


def _add_output_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument('--output', '-o', type=str, metavar='FILE_PATH',
                        help='Optional path to save results as a JSON, CSV, TSV or TXT file.')
    parser.add_argument('--format', '-f', type=str, choices=VALID_OUTPUT_FORMATS, default=None,
                        help='Output format. Inferred from -o extension if not set; '
                             'stdout (table on the console) otherwise.')


def setup_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='patient-dedup',
        description="Finds likely duplicate patient records and records them for manual review.\n"
                    "Matching weights, thresholds and blocking are read from DEDUP_* environment variables.",
        formatter_class=argparse.RawTextHelpFormatter
    )
    parser.add_argument('--debug', '-v', action='store_true',
                        help='Enable verbose debug output for troubleshooting.')
    subparsers = parser.add_subparsers(
        dest='action', help='The main action to perform.', required=True, metavar='ACTION'
    )

    # --- Sub-command: dedupe ---
    parser_dedupe = subparsers.add_parser('dedupe', help='Match a whole patient population and record candidates.')
    parser_dedupe.add_argument('--input-csv', '-ic', required=True, metavar='CSV_FILE_PATH',
                               help='REQUIRED. CSV file with the patient population.')
    parser_dedupe.add_argument('--new-csv', metavar='CSV_FILE_PATH',
                               help='Incremental mode: only pairs involving a record of this file are scored.')
    _add_column_arguments(parser_dedupe)
    parser_dedupe.add_argument('--ledger', choices=['memory', 'sql'], default='memory',
                               help="Where candidates are recorded (default: memory, results are only printed).")
    parser_dedupe.add_argument('--ledger-table', default=DEFAULT_LEDGER_TABLE,
                               help=f"SQL ledger table (default: {DEFAULT_LEDGER_TABLE}).")
    parser_dedupe.add_argument('--rerun-policy', choices=VALID_RERUN_POLICIES, default=None,
                               help='What to do with already decided pairs that now compare differently.')
    parser_dedupe.add_argument('--workers', type=int, default=None, metavar='N',
                               help='Number of worker threads scoring buckets.')
    _add_output_arguments(parser_dedupe)

    # --- Sub-command: search ---
    parser_search = subparsers.add_parser('search', help='Find potential duplicates of one patient in a CSV population.')
    parser_search.add_argument('--input-csv', '-ic', required=True, metavar='CSV_FILE_PATH',
                               help='REQUIRED. CSV file with the patient population.')
    _add_column_arguments(parser_search)
    parser_search.add_argument('--name', '-n', help='Full name of the patient to look up.')
    parser_search.add_argument('--dob', '-d', metavar='YYYY-MM-DD', help='Date of birth.')
    parser_search.add_argument('--phone', help='Phone number.')
    parser_search.add_argument('--email', help='E-mail address.')
    parser_search.add_argument('--address', help='Postal address.')
    parser_search.add_argument('--limit', type=int, default=None, help='Return at most this many candidates.')
    _add_output_arguments(parser_search)

    # --- Sub-command: review ---
    parser_review = subparsers.add_parser('review', help='Record a review decision in the SQL ledger.')
    parser_review.add_argument('--record-a', required=True, help='REQUIRED. First record id of the pair.')
    parser_review.add_argument('--record-b', required=True, help='REQUIRED. Second record id of the pair.')
    parser_review.add_argument(
        '--status', required=True,
        choices=[s.value for s in ReviewStatus if s != ReviewStatus.PENDING_REVIEW],
        help='REQUIRED. New disposition of the pair.'
    )
    parser_review.add_argument('--decided-by', help='Reviewer recorded with the decision.')
    parser_review.add_argument('--ledger-table', default=DEFAULT_LEDGER_TABLE,
                               help=f"SQL ledger table (default: {DEFAULT_LEDGER_TABLE}).")
    _add_output_arguments(parser_review)
    return parser


def setup_logging(debug: bool = False, log_file: Optional[str] = None) -> None:
    # Patient data is only unmasked in debug runs
    configure_secure_logging(
        level=logging.DEBUG if debug else logging.INFO,
        log_file=log_file,
        production_mode=not debug,
    )


def build_config(args: argparse.Namespace) -> MatchingConfig:
    """Configuration from the environment, overridden by command-line options."""
    config = load_config()
    overrides: Dict[str, Any] = {}
    if getattr(args, 'rerun_policy', None):
        overrides['rerun_policy'] = args.rerun_policy
    if getattr(args, 'workers', None) is not None:
        overrides['max_workers'] = args.workers
    return replace(config, **overrides).validate() if overrides else config


def column_map_from_args(args: argparse.Namespace) -> Dict[str, str]:
    return {
        "record_id": args.id_column,
        "display_name": args.name_column,
        "date_of_birth": args.dob_column,
        "phone": args.phone_column,
        "email": args.email_column,
        "address": args.address_column,
    }


def _run_pipeline(args: argparse.Namespace, config: MatchingConfig,
                  ledger: MatchReviewLedger, logger) -> Tuple[List[Any], RunReport]:
    column_map = column_map_from_args(args)
    population = CsvPatientSource(args.input_csv, column_map)
    pipeline = DeduplicationPipeline(config, ledger)

    # Ctrl-C stops the run between pairs; committed buckets are kept
    def _cancel(signum, frame):
        logger.warning("Interrupt received, cancelling matching run...")
        pipeline.cancel()

    previous_handler = signal.signal(signal.SIGINT, _cancel)
    try:
        if args.new_csv:
            report = pipeline.run_incremental(CsvPatientSource(args.new_csv, column_map), population)
        else:
            report = pipeline.run(population)
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    if report.flagged_record_ids:
        logger.warning(f"{len(report.flagged_record_ids)} records were flagged for manual review (oversized buckets).")
    return ledger.candidates(), report


def handle_dedupe(args: argparse.Namespace, config: MatchingConfig, logger) -> Tuple[List[Any], RunReport]:
    if args.ledger == 'sql':
        with SQLInterface(debug=args.debug) as db:
            if not db.connection:
                raise DatabaseConnectionError("Database connection failed.")
            ledger = SqlMatchLedger(db, args.ledger_table, config.rerun_policy)
            ledger.ensure_schema()
            return _run_pipeline(args, config, ledger, logger)
    return _run_pipeline(args, config, InMemoryMatchLedger(config.rerun_policy), logger)


def handle_search(args: argparse.Namespace, config: MatchingConfig, logger) -> List[Any]:
    probe = PatientIdentity(
        record_id=PROBE_RECORD_ID,
        display_name=args.name,
        date_of_birth=args.dob,
        phone=args.phone,
        email=args.email,
        address=args.address,
    )
    if not any([args.name, args.dob, args.phone, args.email, args.address]):
        raise ConfigurationError("search needs at least one of --name, --dob, --phone, --email, --address")
    population = CsvPatientSource(args.input_csv, column_map_from_args(args))
    pipeline = DeduplicationPipeline(config)
    matches = pipeline.find_potential_duplicates(probe, population, limit=args.limit)
    logger.info(f"Found {len(matches)} potential duplicates.")
    return matches


def handle_review(args: argparse.Namespace, config: MatchingConfig, logger) -> List[Any]:
    with SQLInterface(debug=args.debug) as db:
        if not db.connection:
            raise DatabaseConnectionError("Database connection failed.")
        ledger = SqlMatchLedger(db, args.ledger_table, config.rerun_policy)
        updated = ledger.transition(args.record_a, args.record_b, ReviewStatus(args.status), args.decided_by)
    logger.info(f"Candidate {updated.candidate_id} is now {updated.status.value}.")
    return [updated]


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()

    parser = setup_arg_parser()
    args = parser.parse_args(argv)

    debug = getattr(args, 'debug', False)
    setup_logging(debug, os.getenv('DEDUP_LOGFILE'))
    logger = get_secure_logger(LOGGER_NAME)
    logger.debug(f"Parsed arguments: action={args.action}")

    start_time = datetime.now(timezone.utc)
    report: Optional[RunReport] = None
    try:
        config = build_config(args)
        if args.action == 'dedupe':
            results, report = handle_dedupe(args, config, logger)
        elif args.action == 'search':
            results = handle_search(args, config, logger)
        elif args.action == 'review':
            results = handle_review(args, config, logger)
        else:  # Should not happen due to argparse
            logger.critical(f"Unknown action: {args.action}")
            return 1
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 1
    except (DatabaseConnectionError, QueryExecutionError) as e:
        logger.error(f"Database error: {e}")
        return 1
    except DeduplicationError as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1
    except Exception as e:
        logger.exception(f"An unexpected error occurred: {e}")
        return 1

    execution_duration_ms = int((datetime.now(timezone.utc) - start_time).total_seconds() * 1000)
    effective_format = determine_output_format(args.format, args.output)
    metadata_dict = create_metadata_dict(start_time, execution_duration_ms, args, args.action, results, report)
    if not handle_output(results, args.output, args.action, effective_format, metadata_dict):
        return 1

    logger.info(f"--- {args.action} finished ---")
    if report is not None and report.status not in (STATUS_SUCCESS, STATUS_SUCCESS_NO_DATA):
        return 1
    return 0


if __name__ == "__main__":
    import sys
    sys.exit(main())
