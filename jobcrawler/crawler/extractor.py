"""
Rule-driven job extraction.

Turns a site's ExtractionRules into CrawledJob records without any
site-specific code. The engine is pure: the same document and rules always
produce the same records in the same order.
"""
import re
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Union
from urllib.parse import urljoin

from bs4 import BeautifulSoup, Tag
from dateutil import parser as date_parser

from ..core.models import CrawledJob, ExtractionRules, FieldRule

logger = logging.getLogger(__name__)

STRING_FIELDS = (
    "title", "description", "requirements", "company", "location", "city",
    "country", "job_type", "location_type", "currency",
)
INT_FIELDS = ("salary_min", "salary_max")
OPTIONAL_STRING_FIELDS = ("application_url", "application_email")
DATE_FIELDS = ("expires_at",)

DIGITS_RE = re.compile(r"\d+")

Document = Union[BeautifulSoup, Tag, str, bytes]


def parse_document(html: Union[str, bytes]) -> BeautifulSoup:
    """Parse raw HTML with the lxml parser."""
    return BeautifulSoup(html, "lxml")


def strip_html(value: str) -> str:
    if not value:
        return value
    return BeautifulSoup(value, "lxml").get_text().strip()


def parse_int(value: str) -> Optional[int]:
    """
    First run of digits after removing thousands separators and whitespace.

    Returns None (not zero) when the value has no digits.
    """
    if not value:
        return None
    cleaned = re.sub(r"[,\s]", "", value)
    match = DIGITS_RE.search(cleaned)
    if not match:
        return None
    return int(match.group(0))


def parse_date(value: str) -> Optional[datetime]:
    """Best-effort date parsing; naive dates are taken as UTC."""
    if not value or not value.strip():
        return None
    try:
        parsed = date_parser.parse(value.strip())
    except (ValueError, OverflowError) as e:
        logger.debug(f"[extractor] Could not parse date {value!r}: {e}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def apply_transformations(value: str, transformations: List[str]) -> str:
    """Apply string-level transformations in order."""
    result = value
    for transform in transformations:
        if transform == "trim":
            result = result.strip()
        elif transform == "lowercase":
            result = result.lower()
        elif transform == "uppercase":
            result = result.upper()
        elif transform == "strip_html":
            result = strip_html(result)
        elif transform == "remove_commas":
            result = result.replace(",", "")
        # parse_int / parse_date are applied by field type, not here
    return result


def _attr(element: Tag, name: str) -> str:
    value = element.get(name)
    if value is None:
        return ""
    if isinstance(value, list):
        # multi-valued attributes such as class
        return " ".join(value)
    return str(value)


class ExtractionEngine:
    """Extracts job records from listing pages using declarative rules"""

    def __init__(self, rules: ExtractionRules):
        self.rules = rules
        self._patterns: Dict[str, re.Pattern] = {}

    def _pattern(self, pattern: str) -> re.Pattern:
        if pattern not in self._patterns:
            self._patterns[pattern] = re.compile(pattern)
        return self._patterns[pattern]

    def select_listings(self, document: Document) -> List[Tag]:
        """All elements matched by the listing-container selector."""
        if isinstance(document, (str, bytes)):
            document = parse_document(document)
        return document.select(self.rules.job_list_selector)

    def extract_jobs(self, document: Document, base_url: str) -> List[CrawledJob]:
        """
        Extract one CrawledJob per listing container.

        Containers whose detail URL cannot be resolved are dropped and do not
        appear in the result.

        Args:
            document: parsed page (or raw HTML)
            base_url: URL of the page the document was fetched from

        Returns:
            Jobs in document order
        """
        jobs = []
        listings = self.select_listings(document)
        for container in listings:
            job = self.extract_job(container, base_url)
            if job is not None:
                jobs.append(job)

        dropped = len(listings) - len(jobs)
        if dropped:
            logger.debug(f"[extractor] Dropped {dropped} listing(s) without a detail URL on {base_url}")
        return jobs

    def extract_job(self, container: Tag, base_url: str) -> Optional[CrawledJob]:
        detail_url = self.extract_detail_url(container, base_url)
        if not detail_url:
            return None

        job = CrawledJob(detail_url=detail_url)

        if self.rules.external_id is not None:
            external_id = self.extract_field(container, self.rules.external_id)
            job.external_id = apply_transformations(external_id, self.rules.external_id.transformations)

        for field_name, rule in self.rules.fields.items():
            value = self.extract_field(container, rule)
            value = apply_transformations(value, rule.transformations)
            self._assign(job, field_name, value)

        job.raw_html = container.decode_contents()
        return job

    def _assign(self, job: CrawledJob, field_name: str, value: str):
        if field_name in STRING_FIELDS:
            setattr(job, field_name, value)
        elif field_name in INT_FIELDS:
            setattr(job, field_name, parse_int(value))
        elif field_name in OPTIONAL_STRING_FIELDS:
            setattr(job, field_name, value or None)
        elif field_name in DATE_FIELDS:
            setattr(job, field_name, parse_date(value))
        # unknown logical fields are ignored

    def extract_detail_url(self, container: Tag, base_url: str) -> str:
        rule = self.rules.job_detail_url
        link = container.select_one(rule.selector)
        if link is None:
            return ""

        url = _attr(link, rule.attribute).strip()
        if rule.type == "relative" and url and not url.startswith("http"):
            url = urljoin(rule.base_url or base_url, url)
        return url

    def extract_field(self, container: Tag, rule: FieldRule) -> str:
        element = container.select_one(rule.selector)
        value = ""
        if element is not None:
            if rule.type == "text":
                value = element.get_text().strip()
            elif rule.type == "html":
                value = element.decode_contents().strip()
            elif rule.type == "attribute":
                value = _attr(element, rule.attribute)
            elif rule.type == "regex":
                match = self._pattern(rule.regex_pattern).search(element.get_text())
                if match and match.re.groups >= 1:
                    value = match.group(1) or ""

        if not value and not rule.required:
            return rule.default_value
        return value
