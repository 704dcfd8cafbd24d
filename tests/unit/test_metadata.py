"""Unit tests for patient_dedup.metadata module."""

from argparse import Namespace
from datetime import datetime, timezone

from patient_dedup.config import APP_VERSION
from patient_dedup.matching.pipeline import RunReport
from patient_dedup.metadata import create_metadata_dict, extract_parameters


def _args(**overrides):
    values = {
        "action": "dedupe",
        "input_csv": "population.csv",
        "ledger": "memory",
        "workers": None,
        "output": "out.json",
        "debug": False,
    }
    values.update(overrides)
    return Namespace(**values)


class TestExtractParameters:
    """Test parameter extraction from parsed arguments."""

    def test_relevant_parameters_only(self):
        """Test that unset and unrelated options are left out."""
        assert extract_parameters(_args()) == {"input_csv": "population.csv", "ledger": "memory"}

    def test_values_stringified(self):
        """Test that numeric options become strings."""
        assert extract_parameters(_args(workers=4))["workers"] == "4"


class TestCreateMetadataDict:
    """Test the metadata block written with results."""

    START = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)

    def test_with_run_report(self, sample_candidate):
        """Test metadata for a pipeline run."""
        report = RunReport(records_seen=2, buckets=1, buckets_committed=1, comparisons=1)

        metadata = create_metadata_dict(self.START, 12, _args(), "dedupe", [sample_candidate], report)

        assert metadata["run_timestamp_utc"] == "2024-01-02T03:04:05+00:00"
        assert metadata["tool_version"] == APP_VERSION
        assert metadata["row_count"] == 1
        assert metadata["duplicate_stats"]["high_confidence"] == 1
        assert metadata["run_report"]["comparisons"] == 1
        assert metadata["status"] == "success"

    def test_cancelled_run(self):
        """Test that the report status wins."""
        report = RunReport(records_seen=5, cancelled=True)
        metadata = create_metadata_dict(self.START, 1, _args(), "dedupe", [], report)
        assert metadata["status"] == "cancelled"

    def test_without_report(self):
        """Test the status of a probe search without results."""
        metadata = create_metadata_dict(self.START, 1, _args(action="search"), "search", [])

        assert metadata["status"] == "success_no_data"
        assert metadata["row_count"] == 0
        assert "duplicate_stats" not in metadata
        assert "run_report" not in metadata
