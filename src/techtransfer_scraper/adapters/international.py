"""
International university listings.

Adds localisation on top of the university flow: the content language is
taken from the document itself (``<html lang>``, then a content-language
meta tag, then statistical detection with langdetect), the country-code TLD
selects a region whose timezone, charset and cooldown multiplier apply, and
regional date spellings are rewritten to ISO ``YYYY-MM-DD``.
"""

from __future__ import annotations

import re
from dataclasses import replace
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlparse

import structlog
from langdetect import DetectorFactory, LangDetectException, detect

from techtransfer_scraper.adapters.base import header_value
from techtransfer_scraper.adapters.university import UniversityAdapter
from techtransfer_scraper.config.config import UniversityConfig
from techtransfer_scraper.engines.extraction import clean_text, document_language, looks_like_json, visible_text
from techtransfer_scraper.protocols import InstitutionType, Job, RateLimitConfig, RawData
from techtransfer_scraper.recovery.errors import ErrorClassifier

logger = structlog.get_logger(__name__)

# langdetect is randomised unless seeded
DetectorFactory.seed = 0

REGION_BY_TLD: Dict[str, str] = {
    **dict.fromkeys(
        ("uk", "de", "fr", "es", "it", "nl", "be", "ch", "at", "se", "dk", "fi", "no", "ie", "pt", "pl", "eu"),
        "eu",
    ),
    **dict.fromkeys(("jp", "cn", "kr", "tw", "hk", "sg"), "asia"),
    **dict.fromkeys(("au", "nz"), "oceania"),
}

COOLDOWN_MULTIPLIERS: Dict[str, float] = {"eu": 1.5, "asia": 2.0, "oceania": 1.2, "other": 1.0}

TIMEZONES: Dict[str, str] = {
    "eu": "Europe/London",
    "asia": "Asia/Tokyo",
    "oceania": "Australia/Sydney",
    "other": "UTC",
}

CHARSETS: Dict[str, str] = {"ja": "shift_jis", "zh": "gb2312", "ko": "euc-kr"}
DEFAULT_CHARSET = "utf-8"

ACCEPT_LANGUAGES: Dict[str, str] = {
    "en": "en-US,en;q=0.9",
    "de": "de-DE,de;q=0.9,en;q=0.8",
    "fr": "fr-FR,fr;q=0.9,en;q=0.8",
    "es": "es-ES,es;q=0.9,en;q=0.8",
    "it": "it-IT,it;q=0.9,en;q=0.8",
    "ja": "ja-JP,ja;q=0.9,en;q=0.8",
    "zh": "zh-CN,zh;q=0.9,en;q=0.8",
    "ko": "ko-KR,ko;q=0.9,en;q=0.8",
}

LANGUAGE_BY_TLD: Dict[str, str] = {
    "uk": "en", "ie": "en", "au": "en", "nz": "en",
    "de": "de", "at": "de", "ch": "de",
    "fr": "fr", "be": "fr",
    "es": "es", "it": "it",
    "jp": "ja", "cn": "zh", "tw": "zh", "hk": "zh", "kr": "ko",
}  # fmt: skip

_CJK_PUNCTUATION_RE = re.compile(r"[\u3000-\u303f]")
_EU_DATE_RE = re.compile(r"\b(\d{1,2})\.(\d{1,2})\.(\d{4})\b")
_ISO_DATE_RE = re.compile(r"\b(\d{4})-(\d{1,2})-(\d{1,2})\b")
_CJK_DATE_RE = re.compile(r"(\d{4})\s*年\s*(\d{1,2})\s*月\s*(\d{1,2})\s*日")


def tld_of(url: str) -> str:
    host = (urlparse(url).hostname or "").lower().rstrip(".")
    return host.rsplit(".", 1)[-1] if "." in host else ""


def region_for(url: str) -> str:
    return REGION_BY_TLD.get(tld_of(url), "other")


def primary_language(tag: Optional[str]) -> Optional[str]:
    """``en-GB`` -> ``en``; ``None`` for empty tags."""
    if not tag:
        return None
    return re.split(r"[-_]", tag.strip().lower(), maxsplit=1)[0] or None


def detect_language(html: str, content_type: str = "text/html") -> Optional[str]:
    """Declared language first, statistical detection on the body text last."""
    if looks_like_json(content_type, html):
        return None
    declared = primary_language(document_language(html))
    if declared:
        return declared
    text = visible_text(html)
    if len(text) < 20:
        return None
    try:
        return primary_language(detect(text))
    except LangDetectException:
        return None


def _iso(year: str, month: str, day: str) -> str:
    return f"{int(year):04d}-{int(month):02d}-{int(day):02d}"


def normalize_dates(text: str) -> str:
    """Rewrite ``dd.mm.yyyy``, ``yyyy-m-d`` and ``yyyy年m月d日`` to ``YYYY-MM-DD``."""
    text = _CJK_DATE_RE.sub(lambda m: _iso(*m.groups()), text)
    text = _EU_DATE_RE.sub(lambda m: _iso(m.group(3), m.group(2), m.group(1)), text)
    return _ISO_DATE_RE.sub(lambda m: _iso(*m.groups()), text)


def fold_cjk_punctuation(text: str) -> str:
    return clean_text(_CJK_PUNCTUATION_RE.sub(" ", text))


def is_date_field(name: str) -> bool:
    return name in ("date", "dates") or name.endswith("_date")


def _localize(value: Any, dates: bool) -> Any:
    if isinstance(value, list):
        return [_localize(v, dates) for v in value]
    if not isinstance(value, str):
        return value
    if dates:
        value = normalize_dates(value)
    return fold_cjk_punctuation(value)


class InternationalAdapter(UniversityAdapter):
    """University adapter with language, region and date localisation."""

    institution_type = InstitutionType.INTERNATIONAL_UNIVERSITY

    def __init__(
        self,
        config: Optional[UniversityConfig] = None,
        classifier: Optional[ErrorClassifier] = None,
    ):
        super().__init__(config, classifier)

    def check_job(self, job: Job) -> None:
        # Many foreign universities use plain country domains (tum.de, uni-heidelberg.de)
        return None

    def rate_limit_config(self, job: Job, base: RateLimitConfig) -> RateLimitConfig:
        multiplier = COOLDOWN_MULTIPLIERS[region_for(job.url)]
        if multiplier == 1.0:
            return base
        return replace(base, cooldown_period=base.cooldown_period * multiplier)

    def prepare_job(self, job: Job) -> Job:
        job = super().prepare_job(job)
        language = LANGUAGE_BY_TLD.get(tld_of(job.url))
        headers = dict(job.config.headers)
        if header_value(headers, "Accept-Language") is None:
            headers["Accept-Language"] = ACCEPT_LANGUAGES.get(language or "en", ACCEPT_LANGUAGES["en"])
        charset = CHARSETS.get(language or "", DEFAULT_CHARSET)
        if header_value(headers, "Accept-Charset") is None:
            headers["Accept-Charset"] = f"{charset},utf-8;q=0.7,*;q=0.3"
        encoding = job.config.encoding or charset
        return replace(job, config=replace(job.config, headers=headers, encoding=encoding))

    def post_process(self, job: Job, fields: Dict[str, Any], raw: RawData) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        localized = {name: _localize(value, is_date_field(name)) for name, value in fields.items()}

        region = region_for(job.url)
        page = raw.pages[0] if raw.pages else None
        language = detect_language(page.content, page.content_type) if page and page.content else None
        if language is None:
            language = LANGUAGE_BY_TLD.get(tld_of(job.url))
        metadata = {
            "language": language,
            "region": region,
            "timezone": TIMEZONES[region],
            "charset": CHARSETS.get(language or "", DEFAULT_CHARSET),
        }
        logger.debug("Localized international result", job_id=job.id, **metadata)
        return localized, metadata
