"""Shared pytest configuration and fixtures for patient_dedup tests."""

import csv
import tempfile
from datetime import date
from pathlib import Path
from typing import Dict
from unittest.mock import MagicMock, Mock

import pytest

from patient_dedup.config import MatchingConfig
from patient_dedup.matching.ledger import InMemoryMatchLedger
from patient_dedup.matching.models import MatchCandidate, PatientIdentity
from patient_dedup.matching.normalizer import normalize_identity
from patient_dedup.matching.scoring import CompositeScorer
from patient_dedup.sql_interface import SQLInterface


class FakePyodbcError(Exception):
    """Stand-in for pyodbc.Error when pyodbc is patched out."""


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmp_dir:
        yield Path(tmp_dir)


@pytest.fixture
def matching_config():
    """Default matching configuration with a single worker for deterministic runs."""
    return MatchingConfig(max_workers=1).validate()


@pytest.fixture
def scorer(matching_config):
    """CompositeScorer built from the default configuration."""
    return CompositeScorer(matching_config)


@pytest.fixture
def scenario_a():
    """Same patient, one typo in the name, every other field equal."""
    return (
        PatientIdentity("P001", "Rajesh Kumar", date(1985, 3, 15), "9876543210", "rajesh@example.com"),
        PatientIdentity("P002", "Rajeesh Kumar", date(1985, 3, 15), "9876543210", "rajesh@example.com"),
    )


@pytest.fixture
def scenario_b():
    """Same patient, phone with country code, e-mail missing on one side."""
    return (
        PatientIdentity("P003", "Priya Sharma", date(1990, 7, 22), "8765432109", "priya@example.com"),
        PatientIdentity("P004", "Priya Sharma", date(1990, 7, 22), "+918765432109", None),
    )


@pytest.fixture
def scenario_c():
    """Same name, nothing else in common."""
    return (
        PatientIdentity("P005", "Amit Kumar", date(1980, 1, 1), "9999999999", "amit1@example.com"),
        PatientIdentity("P006", "Amit Kumar", date(1992, 12, 31), "8888888888", "amit2@example.com"),
    )


@pytest.fixture
def sample_population(scenario_a, scenario_b, scenario_c):
    """Population mixing the three scenarios with an unrelated patient."""
    return [
        *scenario_a,
        *scenario_b,
        *scenario_c,
        PatientIdentity("P007", "Hans Müller", date(1970, 5, 15), "0301234567", "hans@example.de"),
    ]


@pytest.fixture
def sample_candidate(scorer, scenario_a):
    """MatchCandidate for scenario A."""
    a, b = (normalize_identity(identity) for identity in scenario_a)
    return scorer.build_candidate(a, b)


@pytest.fixture
def memory_ledger():
    """Empty in-memory ledger."""
    return InMemoryMatchLedger()


@pytest.fixture
def population_csv(temp_dir):
    """CSV file with the sample population, including a row without id."""
    csv_path = temp_dir / "population.csv"
    with open(csv_path, "w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(["PatientID", "Name", "DOB", "Phone", "Email", "Address"])
        writer.writerows(
            [
                ["P001", "Rajesh Kumar", "1985-03-15", "9876543210", "rajesh@example.com", "12 MG Road"],
                ["P002", "Rajeesh Kumar", "1985-03-15", "9876543210", "rajesh@example.com", "12 M.G. Road"],
                ["P003", "Priya Sharma", "1990-07-22", "8765432109", "priya@example.com", ""],
                ["P004", "Priya Sharma", "1990-07-22", "+918765432109", "", ""],
                ["P007", "Hans Müller", "15.05.1970", "030 1234567", "hans@example.de", "Hauptstraße 123"],
                ["", "No Id", "1999-01-01", "", "", ""],
            ],
        )
    return csv_path


@pytest.fixture
def mock_sql_interface():
    """Mock SQLInterface for testing without database connection."""
    mock = Mock(spec=SQLInterface)
    mock.connect.return_value = True
    mock.connection = MagicMock()
    mock.cursor = MagicMock()
    mock.execute_query.return_value = True
    mock.fetch_results.return_value = []
    mock.commit.return_value = True
    mock.rowcount = 1
    mock.close_connection.return_value = None
    return mock


@pytest.fixture
def mock_pyodbc():
    """MagicMock standing in for the pyodbc module, with a real exception class."""
    mock = MagicMock()
    mock.Error = FakePyodbcError
    return mock


@pytest.fixture(autouse=True)
def setup_test_environment(monkeypatch):
    """Set up test environment variables and cleanup."""
    # Mock environment variables to avoid requiring .env file
    test_env = {
        "SQL_SERVER": "test_server",
        "DATABASE": "test_db",
        "USERNAME_SQL": "test_user",
        "PASSWORD": "test_pass",
        "SQL_DRIVER": "{ODBC Driver 17 for SQL Server}",
    }

    for key, value in test_env.items():
        monkeypatch.setenv(key, value)

    # Matching settings must come from the test, never from the developer's shell
    for key in [
        "DEDUP_WEIGHT_NAME", "DEDUP_WEIGHT_DOB", "DEDUP_WEIGHT_PHONE", "DEDUP_WEIGHT_EMAIL",
        "DEDUP_WEIGHT_ADDRESS", "DEDUP_THRESHOLD_HIGH", "DEDUP_THRESHOLD_MEDIUM", "DEDUP_THRESHOLD_LOW",
        "DEDUP_BLOCKING_STRATEGIES", "DEDUP_MAX_BUCKET_SIZE", "DEDUP_MIN_REPORT_SCORE",
        "DEDUP_FOLD_UNICODE", "DEDUP_RERUN_POLICY", "DEDUP_MAX_WORKERS", "DEDUP_LOGFILE",
    ]:
        monkeypatch.delenv(key, raising=False)

    yield


# Test markers for different test categories
def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running")
    config.addinivalue_line("markers", "database: mark test as requiring database")


class CustomAssertions:
    """Custom assertion helpers for domain-specific testing."""

    @staticmethod
    def assert_valid_candidate(candidate: MatchCandidate) -> None:
        """Assert that a MatchCandidate is canonical and fully scored."""
        assert candidate.record_id_a < candidate.record_id_b
        assert 0.0 <= candidate.composite_score <= 100.0
        assert [r.field_name for r in candidate.field_results] == ["name", "dob", "phone", "email", "address"]

    @staticmethod
    def assert_sql_query_format(query: str) -> None:
        """Assert that SQL query is properly formatted."""
        assert isinstance(query, str)
        assert len(query.strip()) > 0
        assert query.strip().upper().startswith(("SELECT", "INSERT", "UPDATE", "DELETE", "IF"))


@pytest.fixture
def custom_assertions():
    """Provide custom assertion helpers."""
    return CustomAssertions()
