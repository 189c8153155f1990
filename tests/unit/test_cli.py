"""
Tests for the command-line interface.
"""

import asyncio

import click
import pytest
import yaml
from aioresponses import aioresponses
from click.testing import CliRunner

from techtransfer_scraper.cli import cli, parse_pairs
from techtransfer_scraper.protocols import ErrorKind, ScrapeError
from techtransfer_scraper.recovery import DeadLetterArchive
from tests.helpers import STANFORD_HTML


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        yaml.safe_dump({"orchestrator": {"dead_letter_db_path": str(tmp_path / "dead_letter.db")}}),
        encoding="utf-8",
    )
    return path


@pytest.mark.unit
class TestParsePairs:
    def test_pairs(self):
        assert parse_pairs(["title=.tech-title", " X-API-Key = abc=def "], "--header") == {
            "title": ".tech-title",
            "X-API-Key": "abc=def",
        }

    @pytest.mark.parametrize("value", ["no-separator", "=value"])
    def test_malformed(self, value):
        with pytest.raises(click.BadParameter):
            parse_pairs([value], "--selector")


@pytest.mark.unit
class TestValidateConfig:
    def test_valid_file(self, runner, config_file):
        result = runner.invoke(cli, ["--config", str(config_file), "validate-config"])

        assert result.exit_code == 0
        assert "Configuration is valid." in result.output

    def test_invalid_file(self, runner, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("circuit_breaker: {error_threshold_percentage: 400}", encoding="utf-8")

        result = runner.invoke(cli, ["--config", str(path), "validate-config"])

        assert result.exit_code == 1
        assert "Configuration is invalid" in result.output


@pytest.mark.unit
class TestDeadLetterCommands:
    @pytest.fixture
    def archived(self, tmp_path, config_file, federal_job):
        async def record():
            archive = DeadLetterArchive(tmp_path / "dead_letter.db")
            await archive.initialize()
            error = ScrapeError(ErrorKind.AUTHENTICATION_ERROR, "API key rejected", federal_job.id, federal_job.url)
            await archive.record(federal_job, error)
            await archive.close()

        asyncio.run(record())
        return config_file

    def test_stats(self, runner, archived):
        result = runner.invoke(cli, ["--config", str(archived), "dlq", "stats"])

        assert result.exit_code == 0
        assert "kind.AUTHENTICATION_ERROR" in result.output

    def test_list_as_json(self, runner, archived):
        result = runner.invoke(cli, ["--config", str(archived), "dlq", "list", "--json"])

        assert result.exit_code == 0
        assert "job-nrel-1" in result.output
        assert "secret-key" not in result.output

    def test_purge(self, runner, archived):
        result = runner.invoke(cli, ["--config", str(archived), "dlq", "purge", "--older-than", "0"])

        assert result.exit_code == 0
        assert "Deleted" in result.output


@pytest.mark.unit
class TestScrape:
    def test_single_job_in_process(self, runner, config_file):
        url = "https://tech.stanford.edu/x"
        with aioresponses() as m:
            m.get(url, status=200, body=STANFORD_HTML, content_type="text/html")

            result = runner.invoke(
                cli,
                [
                    "--config",
                    str(config_file),
                    "scrape",
                    url,
                    "-s",
                    "title=.tech-title",
                    "-s",
                    "description=.tech-description",
                    "--no-pagination",
                    "--timeout",
                    "10",
                    "--json",
                ],
            )

        assert result.exit_code == 0, result.output
        assert '"title": "Widget"' in result.output
        assert '"settled": true' in result.output

    def test_rejected_job_exits_non_zero(self, runner, config_file):
        result = runner.invoke(
            cli, ["--config", str(config_file), "scrape", "https://example.com/x", "--timeout", "5", "--json"]
        )

        assert result.exit_code == 1
        assert "VALIDATION_ERROR" in result.output
