"""
Unit tests for entity validation, config parsing and the crawl log lifecycle.
"""
import pytest
from pydantic import ValidationError

from jobcrawler.core.config import DEFAULT_USER_AGENT
from jobcrawler.core.errors import CrawlLogStateError, InvalidSiteError
from jobcrawler.core.models import (
    CrawlLog,
    CrawlSite,
    FieldRule,
    JobURLRule,
    LinkFollowPagination,
    QueryParamPagination,
    SinglePagePagination,
)


class TestCrawlSite:

    def test_defaults(self, make_site):
        site = make_site(deduplication_key="", user_agent=None)

        assert site.deduplication_key == "url"
        assert site.active is True
        assert site.effective_user_agent == DEFAULT_USER_AGENT
        assert isinstance(site.pagination_config, SinglePagePagination)

    def test_json_round_trip(self, make_site):
        site = make_site(pagination_config={"type": "query_param", "param_name": "p", "max_pages": 5})

        restored = CrawlSite.model_validate(site.model_dump(mode="json"))

        assert restored == site
        assert isinstance(restored.pagination_config, QueryParamPagination)
        assert restored.pagination_config.param_name == "p"

    def test_unknown_pagination_type_degrades(self, make_site):
        site = make_site(pagination_config={"type": "scroll"})
        assert isinstance(site.pagination_config, SinglePagePagination)

    def test_link_follow_needs_selector(self, make_site):
        with pytest.raises(ValidationError):
            make_site(pagination_config={"type": "link_follow"})
        site = make_site(pagination_config={"type": "link_follow", "next_page_selector": "a.next"})
        assert isinstance(site.pagination_config, LinkFollowPagination)

    @pytest.mark.parametrize("overrides", [
        {"name": " "},
        {"base_url": ""},
        {"schedule": ""},
        {"deduplication_key": "fuzzy"},
        {"crawl_interval": "hourly"},
    ])
    def test_ensure_valid(self, make_site, overrides):
        with pytest.raises(InvalidSiteError):
            make_site(**overrides).ensure_valid()

    def test_negative_delay_rejected(self, make_site):
        with pytest.raises(ValidationError):
            make_site(request_delay=-1)

    def test_zero_pagination_numbers_load(self, make_site):
        site = make_site(pagination_config={"type": "query_param", "start_page": 0, "increment": 0, "max_pages": 0})

        assert site.pagination_config.start_page == 1
        assert site.pagination_config.increment == 1
        assert site.pagination_config.max_pages == 100


class TestFieldRule:

    def test_unknown_transformation(self):
        with pytest.raises(ValidationError):
            FieldRule(selector=".x", transformations=["reverse"])

    def test_attribute_rule_needs_attribute(self):
        with pytest.raises(ValidationError):
            FieldRule(selector=".x", type="attribute")

    def test_invalid_regex(self):
        with pytest.raises(ValidationError):
            FieldRule(selector=".x", type="regex", regex_pattern="([")

    def test_empty_type_is_text(self):
        assert FieldRule(selector=".x", type="").type == "text"

    def test_empty_job_url_type_is_relative(self):
        assert JobURLRule(selector="a", type="").type == "relative"


class TestCrawlLog:

    def test_complete(self):
        crawl_log = CrawlLog(id="log-1", site_id="site-1")
        crawl_log.add_log("info", "starting")
        crawl_log.complete()

        assert crawl_log.status == "completed"
        assert crawl_log.completed_at >= crawl_log.started_at
        assert crawl_log.duration_ms >= 0
        assert crawl_log.errors == []

    def test_fail_records_error(self):
        crawl_log = CrawlLog(id="log-1", site_id="site-1")
        crawl_log.fail(RuntimeError("boom"))

        assert crawl_log.status == "failed"
        assert crawl_log.errors == ["boom"]
        assert crawl_log.logs[-1].level == "error"

    def test_fail_without_error(self):
        crawl_log = CrawlLog(id="log-1", site_id="site-1")
        crawl_log.fail()

        assert crawl_log.status == "failed"
        assert crawl_log.errors == []

    def test_terminal_state_is_final(self):
        crawl_log = CrawlLog(id="log-1", site_id="site-1")
        crawl_log.complete()

        with pytest.raises(CrawlLogStateError):
            crawl_log.fail("late")
        with pytest.raises(CrawlLogStateError):
            crawl_log.complete()
        assert crawl_log.status == "completed"

    def test_log_entries_are_appended(self):
        crawl_log = CrawlLog(id="log-1", site_id="site-1")
        crawl_log.add_log("info", "one")
        crawl_log.add_error("two")

        assert [e.message for e in crawl_log.logs] == ["one", "two"]
        assert [e.level for e in crawl_log.logs] == ["info", "error"]
