"""Heuristic ranking of raw search hits before extraction."""

from __future__ import annotations

from dataclasses import replace

from loguru import logger

from deepresearch.models.research import SearchHit
from deepresearch.tools import web_utils

PREFERRED_DOMAIN_MARKERS = (
    ".edu",
    ".gov",
    "wikipedia.org",
    "scholar.google.com",
    "bbc.",
    "reuters.",
    "nytimes.",
    "arxiv.org",
)

LOW_VALUE_DOMAIN_MARKERS = (
    "amazon.",
    "walmart.",
    "bestbuy.",
    "ebay.",
    "target.",
    "shopping.",
    ".shop",
    ".store",
)

RELEVANCE_KEYWORDS = (
    "research",
    "study",
    "abstract",
    "thesis",
    "paper",
    "journal",
    "news",
    "report",
    "article",
    "analysis",
    "findings",
    "university",
    "institute",
)

PREFERRED_BONUS = 5
LOW_VALUE_PENALTY = 5
UNPARSEABLE_SCORE = -10


def score_hit(hit: SearchHit) -> int:
    url = hit.link or ""
    try:
        domain = web_utils.hostname(url)
    except ValueError:
        logger.warning(f"Could not parse URL for scoring: {url}")
        return UNPARSEABLE_SCORE

    score = 0
    if any(marker in domain for marker in PREFERRED_DOMAIN_MARKERS):
        score += PREFERRED_BONUS
    if any(marker in domain for marker in LOW_VALUE_DOMAIN_MARKERS):
        score -= LOW_VALUE_PENALTY

    text_to_check = f"{hit.title.lower()} {hit.snippet.lower()} {url.lower()}"
    score += sum(1 for keyword in RELEVANCE_KEYWORDS if keyword in text_to_check)
    return score


def score_hits(hits: list[SearchHit]) -> list[SearchHit]:
    """Return scored copies sorted by score descending; ties keep input order."""
    scored = [replace(hit, score=score_hit(hit)) for hit in hits]
    return sorted(scored, key=lambda hit: hit.score, reverse=True)


def select_top(hits: list[SearchHit], limit: int) -> list[SearchHit]:
    return score_hits(hits)[: max(limit, 0)]
