"""
Unit tests for deduplication strategies.
"""
from unittest.mock import Mock

import pytest

from jobcrawler.core.models import CrawledJob
from jobcrawler.core.repositories import JobRepository
from jobcrawler.crawler.dedupe import composite_key, compute_hash, is_duplicate


@pytest.fixture
def job():
    return CrawledJob(
        detail_url="https://x.com/jobs/1",
        title="Engineer",
        company="Acme",
        location="Berlin",
        external_id="J-1",
    )


@pytest.fixture
def repo():
    repo = Mock(spec=JobRepository)
    repo.exists_by_url.return_value = False
    repo.exists_by_hash.return_value = False
    repo.exists_by_external_id.return_value = False
    return repo


class TestComputeHash:

    def test_composite_key_format(self):
        assert composite_key("A", "B", "C") == "A|B|C|"

    def test_strategies(self, job):
        assert compute_hash(job, "url") == "https://x.com/jobs/1"
        assert compute_hash(job, "composite") == "Engineer|Acme|Berlin|"
        assert compute_hash(job, "external_id") == "J-1"

    def test_composite_is_case_sensitive(self, job):
        other = job.model_copy(update={"title": "engineer"})
        assert compute_hash(job, "composite") != compute_hash(other, "composite")

    @pytest.mark.parametrize("field,value", [
        ("title", "Senior Engineer"),
        ("company", "Globex"),
        ("location", "Paris"),
    ])
    def test_composite_changes_with_each_field(self, job, field, value):
        other = job.model_copy(update={field: value})
        assert compute_hash(job, "composite") != compute_hash(other, "composite")

    def test_unknown_strategy_uses_url(self, job):
        assert compute_hash(job, "fuzzy") == job.detail_url


class TestIsDuplicate:

    def test_url_strategy(self, job, repo):
        repo.exists_by_url.return_value = True

        assert is_duplicate(job, "url", repo)
        repo.exists_by_url.assert_called_once_with("https://x.com/jobs/1")

    def test_composite_strategy(self, job, repo):
        job.deduplication_hash = compute_hash(job, "composite")

        assert not is_duplicate(job, "composite", repo)
        repo.exists_by_hash.assert_called_once_with("Engineer|Acme|Berlin|")
        repo.exists_by_url.assert_not_called()

    def test_external_id_strategy(self, job, repo):
        repo.exists_by_external_id.return_value = True

        assert is_duplicate(job, "external_id", repo)
        repo.exists_by_external_id.assert_called_once_with("J-1")

    def test_empty_external_id_falls_back_to_url(self, job, repo):
        job.external_id = ""

        is_duplicate(job, "external_id", repo)
        repo.exists_by_external_id.assert_not_called()
        repo.exists_by_url.assert_called_once_with(job.detail_url)
