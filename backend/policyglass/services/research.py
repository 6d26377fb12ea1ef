"""Default research executor: turn a policy URL into a stored :class:`Policy`."""

from __future__ import annotations

import logging
import re
import time

import httpx

from policyglass.services import llm
from policyglass.services.executors import ResearchResult
from policyglass.services.reports import ReportRepository

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE = 0.8
MAX_PAGE_CHARS = 20_000

RESEARCH_PROMPT = """You are a research assistant. Read the policy page below and describe its terms in English.

Start your answer with a line of the form "Company Name: <name>", then give a detailed
description of the terms, important clauses, restrictions and user rights.

Source URL: {url}

Page text:
{page_text}
"""

_SCRIPT_RE = re.compile(r"<(script|style)[^>]*>.*?</\1>", re.IGNORECASE | re.DOTALL)
_TAG_RE = re.compile(r"<[^>]+>")
_SPACE_RE = re.compile(r"\s+")
_COMPANY_RE = re.compile(r"^\W*company\s*name\W*", re.IGNORECASE)


def html_to_text(html: str) -> str:
    text = _SCRIPT_RE.sub(" ", html)
    text = _TAG_RE.sub(" ", text)
    return _SPACE_RE.sub(" ", text).strip()


def parse_research_response(response: str) -> tuple[str, str]:
    """Split model output into (company name, terms text).

    The first non-blank line names the company; the rest is the policy text.
    """
    lines = [line for line in response.splitlines() if line.strip()]
    if not lines:
        raise ValueError("Invalid AI response format")

    company_name = _COMPANY_RE.sub("", lines[0]).strip()
    terms_text = "\n".join(lines[1:]).strip()
    if not terms_text:
        raise ValueError("AI response missing terms text")
    return company_name or "Unknown", terms_text


class PolicyResearcher:
    """Callable research executor: ``await researcher(url) -> ResearchResult``."""

    def __init__(
        self,
        reports: ReportRepository,
        ollama_url: str,
        model: str,
        http_timeout: float = 120.0,
    ) -> None:
        self.reports = reports
        self.ollama_url = ollama_url
        self.model = model
        self.http_timeout = http_timeout

    async def fetch_page(self, url: str) -> str:
        async with httpx.AsyncClient(timeout=self.http_timeout, follow_redirects=True) as client:
            response = await client.get(url)
            response.raise_for_status()
        return html_to_text(response.text)[:MAX_PAGE_CHARS]

    async def __call__(self, url: str) -> ResearchResult:
        started = time.monotonic()
        page_text = await self.fetch_page(url)
        raw = await llm.generate(
            RESEARCH_PROMPT.format(url=url, page_text=page_text),
            base_url=self.ollama_url,
            model=self.model,
            timeout=self.http_timeout,
        )
        company_name, terms_text = parse_research_response(raw)
        policy_id = await self.reports.create_policy(company_name, url, terms_text, raw_response=raw)
        logger.info("Researched %s as policy %s in %.1fs", url, policy_id, time.monotonic() - started)
        return ResearchResult(result_id=policy_id, confidence=DEFAULT_CONFIDENCE)
