"""Unit tests for patient_dedup.output_handler module."""

import json

import pytest

from patient_dedup.output_handler import (
    determine_output_format,
    format_metadata_summary,
    handle_output,
    render_output,
)


class TestDetermineOutputFormat:
    """Test output format selection."""

    @pytest.mark.parametrize(
        "user_format,path,expected",
        [
            ("csv", "out.json", "csv"),
            (None, "out.JSON", "json"),
            (None, "out.tsv", "tsv"),
            (None, "out.txt", "txt"),
            (None, "out.xlsx", "json"),
            (None, "out", "json"),
            (None, None, "stdout"),
        ],
    )
    def test_format(self, user_format, path, expected):
        """Test explicit formats, extensions and the stdout default."""
        assert determine_output_format(user_format, path) == expected


class TestRenderOutput:
    """Test rendering without writing."""

    def test_metadata_summary(self):
        """Test comment lines for metadata."""
        assert format_metadata_summary({"action": "dedupe", "row_count": 2}) == "# action: dedupe\n# row_count: 2"
        assert format_metadata_summary(None) == ""

    def test_csv_with_metadata(self, sample_candidate):
        """Test that CSV output starts with the metadata comments."""
        text = render_output([sample_candidate], "csv", {"action": "dedupe"})
        lines = text.splitlines()
        assert lines[0] == "# action: dedupe"
        assert lines[1].startswith("candidate_id,record_id_a,record_id_b")

    def test_txt_without_metadata(self, sample_candidate):
        """Test that TXT output carries no metadata."""
        assert not render_output([sample_candidate], "txt", {"action": "dedupe"}).startswith("#")

    def test_stdout(self, sample_candidate):
        """Test the console rendering."""
        text = render_output([sample_candidate], "stdout", {"action": "dedupe"})
        assert text.startswith("# action: dedupe\n")
        assert "P001" in text

    def test_unknown_format(self):
        """Test that an unknown format is rejected."""
        with pytest.raises(ValueError, match="Unknown output format: xml"):
            render_output([], "xml")


class TestHandleOutput:
    """Test writing results."""

    def test_write_json_file(self, temp_dir, sample_candidate):
        """Test writing a JSON file."""
        path = temp_dir / "candidates.json"

        assert handle_output([sample_candidate], str(path), "dedupe", "json", {"action": "dedupe"}) is True

        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["data"][0]["candidate_id"] == "P001::P002"

    def test_print_to_stdout(self, capsys, sample_candidate):
        """Test printing when no file is given."""
        assert handle_output([sample_candidate], None, "dedupe", "stdout") is True
        assert "P001" in capsys.readouterr().out

    def test_unwritable_path(self, temp_dir, capsys):
        """Test that write errors are reported, not raised."""
        path = temp_dir / "missing_dir" / "out.json"

        assert handle_output([], str(path), "dedupe", "json") is False
        assert "Error during output handling" in capsys.readouterr().err

    def test_unknown_format(self, capsys):
        """Test that an unknown format is reported, not raised."""
        assert handle_output([], None, "dedupe", "xml") is False
        assert "Unknown output format" in capsys.readouterr().err
