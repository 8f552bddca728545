"""
Tests for the CLI interface.
"""
import base64
import os
import shutil
import tempfile
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import yaml
from typer.testing import CliRunner

from tryon_ledger.cli.main import API_TOKEN_ENV, EXIT_CODE_FAIL, EXIT_CODE_PASS, app
from tryon_ledger.core.errors import InvalidRequest
from tryon_ledger.core.image_validator import PNG_SIGNATURE
from tryon_ledger.core.ledger import GemLedger
from tryon_ledger.storage.models import JobRecord
from tryon_ledger.storage.repository import JobRepository, LedgerRepository, initialize_schema

runner = CliRunner()


@pytest.fixture
def mock_orchestrator():
    """Replace pipeline wiring with a mock orchestrator."""
    orchestrator = MagicMock()
    with patch('tryon_ledger.cli.main.load_config'), \
            patch('tryon_ledger.cli.main._build_orchestrator', return_value=orchestrator):
        yield orchestrator


class TestLedgerCommands:
    """Test database and account commands."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "ledger.db")

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_init_and_status(self):
        """Test that status fails until init has run."""
        result = runner.invoke(app, ["status", "--db", self.db_path])
        assert result.exit_code == EXIT_CODE_FAIL
        assert "No database" in result.output

        result = runner.invoke(app, ["init", "--db", self.db_path])
        assert result.exit_code == EXIT_CODE_PASS
        assert "Database initialized" in result.output

        result = runner.invoke(app, ["status", "--db", self.db_path])
        assert result.exit_code == EXIT_CODE_PASS

    def test_grant_and_balance(self):
        """Test opening an account and reading its balance."""
        runner.invoke(app, ["init", "--db", self.db_path])

        result = runner.invoke(app, ["grant", "alice", "5", "--db", self.db_path])
        assert result.exit_code == EXIT_CODE_PASS

        result = runner.invoke(app, ["balance", "alice", "--db", self.db_path])
        assert result.exit_code == EXIT_CODE_PASS
        assert "alice: 5 gems" in result.output

    def test_grant_twice_fails(self):
        """Test that an account cannot be opened twice."""
        runner.invoke(app, ["init", "--db", self.db_path])
        runner.invoke(app, ["grant", "alice", "5", "--db", self.db_path])

        result = runner.invoke(app, ["grant", "alice", "7", "--db", self.db_path])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "already exists" in result.output

    def test_ledger_lists_transactions(self):
        """Test that deductions and refunds are listed."""
        initialize_schema(self.db_path)
        ledger = GemLedger(LedgerRepository(self.db_path))
        ledger.open_account("alice", 5)
        ledger.reserve("alice", 2, "job-1")
        ledger.release("alice", 2, "job-1")

        result = runner.invoke(app, ["ledger", "alice", "--db", self.db_path])

        assert result.exit_code == EXIT_CODE_PASS
        assert "deduction" in result.output
        assert "refund" in result.output
        assert "-2" in result.output
        assert "+2" in result.output

    def test_ledger_empty(self):
        """Test the empty ledger message."""
        runner.invoke(app, ["init", "--db", self.db_path])

        result = runner.invoke(app, ["ledger", "nobody", "--db", self.db_path])

        assert result.exit_code == EXIT_CODE_PASS
        assert "No transactions" in result.output


class TestTryOnCommand:
    """Test the tryon command."""

    def test_remote_images_pass_through(self, mock_orchestrator):
        """Test that URLs are sent unchanged and success exits 0."""
        mock_orchestrator.handle = AsyncMock(return_value=(200, {"job_id": "job-1", "gems_charged": 1}))

        result = runner.invoke(app, [
            "tryon",
            "--model", "https://cdn.example.com/model.jpg",
            "--clothing", "top=https://cdn.example.com/top.jpg",
            "--clothing", "Shoes=https://cdn.example.com/shoes.jpg",
            "--token", "tok-alice",
            "--quality", "hd",
        ])

        assert result.exit_code == EXIT_CODE_PASS
        assert '"job_id": "job-1"' in result.output
        token, payload = mock_orchestrator.handle.call_args.args
        assert token == "tok-alice"
        assert payload["model_image"] == "https://cdn.example.com/model.jpg"
        assert payload["quality"] == "hd"
        assert payload["edit_mode"] is False
        assert [item["category"] for item in payload["clothing_images"]] == ["top", "shoes"]
        assert payload["clothing_images"][0]["image"] == "https://cdn.example.com/top.jpg"

    def test_local_files_are_encoded(self, mock_orchestrator):
        """Test that local images are read and base64 encoded."""
        mock_orchestrator.handle = AsyncMock(return_value=(200, {}))
        temp_dir = tempfile.mkdtemp()
        try:
            image_path = os.path.join(temp_dir, "linen_shirt.png")
            with open(image_path, "wb") as f:
                f.write(PNG_SIGNATURE + b"shirt")

            result = runner.invoke(app, [
                "tryon", "-m", "https://cdn.example.com/model.jpg",
                "-c", f"top={image_path}", "-t", "tok-alice",
            ])
        finally:
            shutil.rmtree(temp_dir, ignore_errors=True)

        assert result.exit_code == EXIT_CODE_PASS
        _, payload = mock_orchestrator.handle.call_args.args
        [item] = payload["clothing_images"]
        assert base64.b64decode(item["image"]) == PNG_SIGNATURE + b"shirt"
        assert item["name"] == "linen_shirt"

    def test_edit_mode(self, mock_orchestrator):
        """Test that --edit switches to edit mode."""
        mock_orchestrator.handle = AsyncMock(return_value=(200, {}))

        result = runner.invoke(app, [
            "tryon", "-m", "https://cdn.example.com/model.jpg",
            "-t", "tok-alice", "--edit", "make the shirt red",
        ])

        assert result.exit_code == EXIT_CODE_PASS
        _, payload = mock_orchestrator.handle.call_args.args
        assert payload["edit_mode"] is True
        assert payload["edit_prompt"] == "make the shirt red"
        assert payload["clothing_images"] == []

    def test_failed_job_exits_nonzero(self, mock_orchestrator):
        """Test that an error response exits 1 and prints the body."""
        mock_orchestrator.handle = AsyncMock(return_value=(402, {"error": "INSUFFICIENT_FUNDS", "message": "..."}))

        result = runner.invoke(app, ["tryon", "-m", "https://cdn.example.com/m.jpg", "-t", "tok"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "INSUFFICIENT_FUNDS" in result.output

    @pytest.mark.parametrize("clothing", ["top", "=https://cdn.example.com/x.jpg", "top=/no/such/file.png"])
    def test_bad_clothing_argument(self, mock_orchestrator, clothing):
        """Test that malformed clothing arguments are rejected before running."""
        result = runner.invoke(app, ["tryon", "-m", "https://cdn.example.com/m.jpg", "-c", clothing, "-t", "tok"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Error" in result.output
        mock_orchestrator.handle.assert_not_called()


class TestConfiguredCommands:
    """Test commands against a real configuration file."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "ledger.db")
        self.config_path = os.path.join(self.temp_dir, "tryon.yaml")
        with open(self.config_path, "w", encoding="utf-8") as f:
            yaml.dump({
                "auth": {"tokens": {"tok-alice": "alice", "tok-bob": "bob"}},
                "storage": {"base_dir": os.path.join(self.temp_dir, "objects")},
                "database": {"path": self.db_path},
            }, f)

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _insert_job(self):
        initialize_schema(self.db_path)
        GemLedger(LedgerRepository(self.db_path)).open_account("alice", 4)
        JobRepository(self.db_path).insert_job(JobRecord(
            job_id="job-1",
            identity="alice",
            model_image="https://cdn.example.com/model.jpg",
            clothing_images=["https://cdn.example.com/top.jpg"],
            quality="standard",
            gems_charged=1,
            created_at=datetime.now(timezone.utc),
        ))

    def test_tryon_without_api_key(self, monkeypatch):
        """Test that running a job needs an inference key."""
        monkeypatch.delenv(API_TOKEN_ENV, raising=False)

        result = runner.invoke(app, [
            "tryon", "-m", "https://cdn.example.com/m.jpg", "-t", "tok-alice", "--config", self.config_path,
        ])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "No inference API key" in result.output

    def test_job_status(self, monkeypatch):
        """Test that the owner can look up a job without an inference key."""
        monkeypatch.delenv(API_TOKEN_ENV, raising=False)
        self._insert_job()

        result = runner.invoke(app, ["job", "job-1", "-t", "tok-alice", "--config", self.config_path])

        assert result.exit_code == EXIT_CODE_PASS
        assert '"status": "processing"' in result.output
        assert '"gems_balance": 4' in result.output

    def test_job_status_other_identity(self):
        """Test that another identity sees a not-found error."""
        self._insert_job()

        result = runner.invoke(app, ["job", "job-1", "-t", "tok-bob", "--config", self.config_path])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "INVALID_REQUEST" in result.output

    def test_job_status_unknown_token(self, mock_orchestrator):
        """Test that lookup errors print the taxonomy kind."""
        mock_orchestrator.job_status = AsyncMock(side_effect=InvalidRequest("Job not found: x"))

        result = runner.invoke(app, ["job", "x", "-t", "tok"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "INVALID_REQUEST" in result.output
        assert "Job not found" not in result.output

    def test_missing_config_file(self):
        """Test that a missing config file exits 1."""
        result = runner.invoke(app, ["job", "x", "-t", "tok", "--config", os.path.join(self.temp_dir, "nope.yaml")])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Config file not found" in result.output
