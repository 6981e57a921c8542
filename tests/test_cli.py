"""
Tests for the command-line interface.

External services are replaced with the in-test fakes.
"""

import json
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest
from conftest import FakeOracle, FakeSpeech, oracle_response
from typer.testing import CliRunner

from grading_pipeline.config import Settings
from grading_pipeline.main import app
from grading_pipeline.storage import InMemoryAnswerRepository

runner = CliRunner()


@pytest.fixture
def data_file(repository: InMemoryAnswerRepository, temp_dir: Path) -> Path:
    """Sample data written to a JSON file."""
    return repository.save(temp_dir / "data.json")


class TestCriteriaCommand:
    """Tests for the criteria command."""

    def test_lists_criteria(self, data_file: Path) -> None:
        result = runner.invoke(app, ["criteria", str(data_file)])

        assert result.exit_code == 0
        assert "Grammar accuracy" in result.output
        assert "Task fulfilment" in result.output

    def test_missing_file(self, temp_dir: Path) -> None:
        result = runner.invoke(app, ["criteria", str(temp_dir / "nope.json")])

        assert result.exit_code == 1
        assert "Data file not found" in result.output

    def test_invalid_file(self, temp_dir: Path) -> None:
        path = temp_dir / "bad.json"
        path.write_text("{not json", encoding="utf-8")

        result = runner.invoke(app, ["criteria", str(path)])

        assert result.exit_code == 1
        assert "Data Error" in result.output


class TestGradeCommand:
    """Tests for the grade and requeue commands."""

    def test_grade_all_answers(
        self, data_file: Path, temp_dir: Path, test_settings: Settings
    ) -> None:
        """Test grading writes scores for text and audio answers."""
        output = temp_dir / "graded.json"

        with (
            patch("grading_pipeline.main.get_settings", return_value=test_settings),
            patch(
                "grading_pipeline.main.LLMClient",
                return_value=FakeOracle(default=oracle_response(4)),
            ),
            patch("grading_pipeline.main.WhisperTranscriber", return_value=FakeSpeech()),
        ):
            result = runner.invoke(app, ["grade", str(data_file), "--output", str(output)])

        assert result.exit_code == 0, result.output
        assert "Grading Results" in result.output

        answers = {a["id"]: a for a in json.loads(output.read_text(encoding="utf-8"))["answers"]}
        assert answers[1]["score"] == "4.00"
        assert answers[2]["score"] == "4.00"
        assert answers[2]["transcribed_text"] == "transcript of audio/answer-2.webm"
        assert answers[4]["score"] is None
        assert answers[5]["score"] is None

    def test_grade_unknown_answer(self, data_file: Path, test_settings: Settings) -> None:
        with (
            patch("grading_pipeline.main.get_settings", return_value=test_settings),
            patch("grading_pipeline.main.LLMClient", return_value=FakeOracle()),
            patch("grading_pipeline.main.WhisperTranscriber", return_value=FakeSpeech()),
        ):
            result = runner.invoke(app, ["grade", str(data_file), "--answer-id", "99"])

        assert result.exit_code == 1
        assert "Answer 99 not found" in result.output

    def test_requeue(self, data_file: Path, test_settings: Settings) -> None:
        """Test the requeue command prints the tallies."""
        with (
            patch("grading_pipeline.main.get_settings", return_value=test_settings),
            patch(
                "grading_pipeline.main.LLMClient",
                return_value=FakeOracle(default=oracle_response(4)),
            ),
            patch("grading_pipeline.main.WhisperTranscriber", return_value=FakeSpeech()),
        ):
            result = runner.invoke(app, ["requeue", str(data_file), "--limit", "10"])

        assert result.exit_code == 0, result.output
        assert "Scored: 3" in result.output
        assert "Skipped: 1" in result.output
        assert "No transcription or audio" in result.output


class TestHealthCommand:
    """Tests for the health command."""

    def test_unreachable_api(self, test_settings: Settings) -> None:
        with (
            patch("grading_pipeline.main.get_settings", return_value=test_settings),
            patch("grading_pipeline.main.LLMClient") as mock_client,
        ):
            mock_client.return_value.health_check = AsyncMock(return_value=False)
            result = runner.invoke(app, ["health"])

        assert result.exit_code == 1
        assert "not reachable" in result.output

