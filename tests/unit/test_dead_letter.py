"""
Unit tests for the SQLite dead-letter archive.
"""

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from techtransfer_scraper.protocols import ErrorKind
from techtransfer_scraper.recovery import DeadLetterArchive, ErrorClassifier, FailedJob

CLASSIFIER = ErrorClassifier()


@pytest_asyncio.fixture
async def archive(tmp_path):
    archive = DeadLetterArchive(db_path=tmp_path / "dlq" / "dead_letter.db")
    await archive.initialize()
    yield archive
    await archive.close()


class TestArchiveLifecycle:
    """Opening and closing the archive."""

    @pytest.mark.asyncio
    async def test_initialize_creates_parent_directory(self, tmp_path):
        archive = DeadLetterArchive(db_path=tmp_path / "nested" / "dlq.db")

        await archive.initialize()
        await archive.initialize()

        assert archive.db_path.exists()
        await archive.close()
        await archive.close()

    @pytest.mark.asyncio
    async def test_uninitialized_archive_is_inert(self, tmp_path, university_job):
        archive = DeadLetterArchive(db_path=tmp_path / "never.db")
        error = CLASSIFIER.make_error(ErrorKind.NOT_FOUND, "gone", university_job)

        failed = await archive.record(university_job, error)

        assert failed.job_id == university_job.id
        assert await archive.list_failed() == []
        assert (await archive.get_failure_statistics())["total_failures"] == 0
        assert await archive.purge_older_than(1) == 0


class TestRecording:
    """Recording and querying failures."""

    @pytest.mark.asyncio
    async def test_record_round_trips_failure_details(self, archive, federal_job):
        job = federal_job.with_status(federal_job.status, retry_count=2)
        error = CLASSIFIER.make_error(ErrorKind.SERVICE_ERROR, "HTTP 503", job)

        await archive.record(job, error)
        [stored] = await archive.list_failed()

        assert isinstance(stored, FailedJob)
        assert stored.job_id == job.id
        assert stored.error_kind is ErrorKind.SERVICE_ERROR
        assert stored.attempts == 3
        assert stored.recovery_suggestions == list(error.recovery_suggestions)
        assert stored.job_snapshot["institution_type"] == "FEDERAL_LAB"
        assert "X-API-Key" not in stored.job_snapshot["headers"]

    @pytest.mark.asyncio
    async def test_rearchiving_replaces_the_entry(self, archive, university_job):
        await archive.record(university_job, CLASSIFIER.make_error(ErrorKind.NOT_FOUND, "first", university_job))
        await archive.record(university_job, CLASSIFIER.make_error(ErrorKind.PARSE_ERROR, "second", university_job))

        stored = await archive.list_failed()

        assert len(stored) == 1
        assert stored[0].error_message == "second"

    @pytest.mark.asyncio
    async def test_filter_by_kind_and_limit(self, archive, university_job):
        for index in range(3):
            job = university_job.with_status(university_job.status, id=f"parse-{index}")
            await archive.record(job, CLASSIFIER.make_error(ErrorKind.PARSE_ERROR, "no title", job))
        missing = university_job.with_status(university_job.status, id="missing")
        await archive.record(missing, CLASSIFIER.make_error(ErrorKind.NOT_FOUND, "gone", missing))

        assert len(await archive.list_failed(kind=ErrorKind.PARSE_ERROR)) == 3
        assert len(await archive.list_failed(limit=2)) == 2
        assert [f.job_id for f in await archive.list_failed(kind=ErrorKind.NOT_FOUND)] == ["missing"]

    @pytest.mark.asyncio
    async def test_failure_statistics(self, archive, university_job, federal_job):
        await archive.record(university_job, CLASSIFIER.make_error(ErrorKind.PARSE_ERROR, "x", university_job))
        await archive.record(federal_job, CLASSIFIER.make_error(ErrorKind.AUTHENTICATION_ERROR, "x", federal_job))

        stats = await archive.get_failure_statistics()

        assert stats["total_failures"] == 2
        assert stats["failures_by_kind"] == {"PARSE_ERROR": 1, "AUTHENTICATION_ERROR": 1}
        assert stats["failures_by_institution_type"] == {"US_UNIVERSITY": 1, "FEDERAL_LAB": 1}
        assert stats["average_attempts"] == 1


class TestPurge:
    @pytest.mark.asyncio
    async def test_purges_only_old_entries(self, archive, university_job):
        old_error = CLASSIFIER.make_error(ErrorKind.NOT_FOUND, "old", university_job)
        old_error = replace(old_error, timestamp=datetime.now(timezone.utc) - timedelta(days=40))
        await archive.record(university_job, old_error)
        recent = university_job.with_status(university_job.status, id="recent")
        await archive.record(recent, CLASSIFIER.make_error(ErrorKind.NOT_FOUND, "new", recent))

        deleted = await archive.purge_older_than(30)

        assert deleted == 1
        assert [f.job_id for f in await archive.list_failed()] == ["recent"]
