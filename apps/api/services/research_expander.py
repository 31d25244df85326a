"""Research gap analysis and targeted expansion searches."""

from __future__ import annotations

import asyncio
import logging
import math
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import ValidationError

from config import settings
from services.llm import (
    create_message,
    extract_text,
    find_tool_input,
    get_anthropic_client,
    parse_json_response,
    web_search_tool,
)
from services.research_schemas import (
    RECORD_SOURCES_TOOL,
    ExpansionPlan,
    ExtractedSourceBatch,
)

logger = logging.getLogger(__name__)

FINGERPRINT_LENGTH = 200
MIN_FINGERPRINT_LENGTH = 50
MIN_EXPANSION_CONTENT_CHARS = 100
MAX_SOURCES_PER_SEARCH = 3
EXPANSION_RELEVANCE = 0.75
DEFAULT_TARGET_SECONDS = 600

InitialResearchFn = Callable[[str], Awaitable[Dict[str, Any]]]


def _safe_text(value: Any) -> str:
    return str(value or "").strip()


def normalize_target_minutes(target_duration: Optional[Any]) -> int:
    """Accept a duration in minutes or seconds; values above 100 are seconds."""
    try:
        value = float(target_duration) if target_duration is not None else float(DEFAULT_TARGET_SECONDS)
    except (TypeError, ValueError):
        value = float(DEFAULT_TARGET_SECONDS)
    if value <= 0:
        value = float(DEFAULT_TARGET_SECONDS)
    if value > 100:
        return int(math.ceil(value / 60))
    return int(math.ceil(value))


def target_word_count(target_minutes: int) -> int:
    return int(target_minutes) * int(settings.WORDS_PER_MINUTE)


def calculate_total_words(sources: Any) -> int:
    """Total whitespace-delimited words across ``source_content`` fields."""
    if not sources or not isinstance(sources, list):
        return 0
    total = 0
    for source in sources:
        content = source.get("source_content") if isinstance(source, dict) else None
        total += len(str(content or "").split())
    return total


def _fingerprint(source: Dict[str, Any]) -> str:
    content = str(source.get("source_content") or "")
    return content[:FINGERPRINT_LENGTH].lower().strip()


def deduplicate_sources(sources: Any) -> List[Dict[str, Any]]:
    """Drop repeated URLs and repeated 200-char content fingerprints.

    Sources whose fingerprint is 50 characters or shorter are dropped too, so
    the output is stable under a second pass.
    """
    if not sources or not isinstance(sources, list):
        return []

    seen_fingerprints = set()
    seen_urls = set()
    unique: List[Dict[str, Any]] = []
    for source in sources:
        if not isinstance(source, dict):
            continue
        url = source.get("source_url")
        if url and url in seen_urls:
            continue
        fingerprint = _fingerprint(source)
        if fingerprint in seen_fingerprints or len(fingerprint) <= MIN_FINGERPRINT_LENGTH:
            continue
        seen_fingerprints.add(fingerprint)
        if url:
            seen_urls.add(url)
        unique.append(source)
    return unique


def _gap_analysis_prompt(topic: str, sources: List[Dict[str, Any]], target_words: int, total_words: int) -> str:
    source_summary = "\n".join(
        f"\nSource {index + 1}: {_safe_text(source.get('source_title')) or 'Untitled'}\n"
        f"Preview: {str(source.get('source_content') or '')[:250]}...\n"
        for index, source in enumerate(sources[:5])
    )
    return f"""You are a research analyst preparing for a comprehensive video script about: "{topic}"

CURRENT RESEARCH (showing first 5 of {len(sources)} sources):
{source_summary}

TARGET: The script needs approximately {target_words} words of source material.
CURRENT: We have approximately {total_words} words.

ANALYSIS TASK:
1. Identify what core facts are already well-covered in the existing research
2. Identify critical information gaps that would make the script more comprehensive
3. Design 5-7 strategic search queries to fill those gaps

We want DIVERSE information sources, not more articles about the exact same event.
Search for contextual information like technical explanations, legal or regulatory
frameworks, psychological or behavioral context, historical comparisons, prevention
and best practices, and broader impact.

FORMAT YOUR RESPONSE AS JSON (no markdown, just raw JSON):
{{
  "core_facts_covered": ["3-5 key facts that are well-documented in existing research"],
  "identified_gaps": [
    {{
      "category": "Technical Details" | "Legal Framework" | "Psychology" | "Historical Context" | "Prevention" | "Impact",
      "missing_info": "Specific information that's missing",
      "why_important": "Why this would make the script better"
    }}
  ],
  "expansion_searches": [
    {{
      "query": "specific search query without quotes",
      "target": "What type of information this will find",
      "expected_value": "How this fills a gap"
    }}
  ]
}}

Each search query must be DIFFERENT and target a DIFFERENT type of information.
Do not write near-duplicate queries that would all return the same articles
(for example several rewordings of the headline event).

Respond with ONLY the JSON, no other text."""


def _empty_plan(error: str) -> Dict[str, Any]:
    return ExpansionPlan(error=error).model_dump()


async def analyze_research_gaps(
    topic: str,
    initial_sources: List[Dict[str, Any]],
    target_duration: int = 30,
) -> Optional[Dict[str, Any]]:
    """Ask the LLM where the research is thin.

    Returns None when existing sources already cover the coverage threshold of
    the target word count; otherwise an expansion plan dict. LLM or parse
    failures yield an empty plan with ``error`` set.
    """
    sources = initial_sources if isinstance(initial_sources, list) else []
    total_words = calculate_total_words(sources)
    target_words = target_word_count(target_duration)
    if total_words >= target_words * float(settings.EXPANSION_COVERAGE_THRESHOLD):
        logger.info(
            "Research for %r already covers %s/%s words; no expansion needed",
            topic,
            total_words,
            target_words,
        )
        return None

    client = get_anthropic_client()
    if client is None:
        return _empty_plan("ANTHROPIC_API_KEY not configured")

    prompt = _gap_analysis_prompt(topic, sources, target_words, total_words)
    try:
        message = await create_message(
            client,
            prompt=prompt,
            max_tokens=int(settings.GAP_ANALYSIS_MAX_TOKENS),
        )
        parsed = parse_json_response(extract_text(message))
        plan = ExpansionPlan.model_validate(parsed)
    except (ValueError, ValidationError) as exc:
        logger.warning("Gap analysis response for %r could not be parsed: %s", topic, exc)
        return _empty_plan(str(exc))
    except Exception as exc:
        logger.error("Failed to analyze research gaps for %r: %s", topic, exc)
        return _empty_plan(str(exc))

    logger.info(
        "Gap analysis for %r: %s gaps, %s expansion searches",
        topic,
        len(plan.identified_gaps),
        len(plan.expansion_searches),
    )
    return plan.model_dump()


def _expansion_search_prompt(query: str, target: str) -> str:
    return f"""Use the web_search tool to find information about: {query}

Target: {target}

After searching, pick the 2-3 most relevant and substantial results. For each one
record the full URL, the page title and a comprehensive extract of the relevant
content (aim for 500-1000 words if available).

Focus on sources that provide CONTEXTUAL or EDUCATIONAL information, not just news
articles about a specific event.

When you are done, call the record_sources tool once with those sources."""


def _sources_from_tool_input(payload: Optional[Dict[str, Any]], search: Dict[str, Any]) -> List[Dict[str, Any]]:
    if not payload:
        return []
    batch = ExtractedSourceBatch.model_validate(payload)
    sources: List[Dict[str, Any]] = []
    seen_urls = set()
    for extracted in batch.sources:
        if len(sources) >= MAX_SOURCES_PER_SEARCH:
            break
        if extracted.url in seen_urls:
            continue
        content = extracted.content.strip()
        if len(content) < MIN_EXPANSION_CONTENT_CHARS:
            continue
        seen_urls.add(extracted.url)
        sources.append(
            {
                "source_url": extracted.url,
                "source_type": "web",
                "source_title": (extracted.title.strip() or "Research Source")[:200],
                "source_content": content,
                "search_category": _safe_text(search.get("target")),
                "relevance": EXPANSION_RELEVANCE,
                "is_starred": False,
                "fact_check_status": "pending",
                "expansion_query": _safe_text(search.get("query")),
            }
        )
    return sources


async def execute_expansion_searches(
    expansion_plan: Optional[Dict[str, Any]],
    max_searches: Optional[int] = None,
    *,
    delay_seconds: Optional[float] = None,
) -> List[Dict[str, Any]]:
    """Run the plan's search queries one at a time and collect new sources."""
    if not expansion_plan or not expansion_plan.get("expansion_searches"):
        return []

    client = get_anthropic_client()
    if client is None:
        logger.warning("Skipping expansion searches: ANTHROPIC_API_KEY not configured")
        return []

    limit = int(max_searches if max_searches is not None else settings.EXPANSION_MAX_SEARCHES)
    delay = float(delay_seconds if delay_seconds is not None else settings.EXPANSION_SEARCH_DELAY_SECONDS)
    searches = list(expansion_plan["expansion_searches"])[: max(limit, 0)]

    expanded: List[Dict[str, Any]] = []
    for index, search in enumerate(searches):
        query = _safe_text(search.get("query"))
        try:
            message = await create_message(
                client,
                prompt=_expansion_search_prompt(query, _safe_text(search.get("target"))),
                max_tokens=int(settings.RESEARCH_MAX_TOKENS),
                tools=[web_search_tool(), RECORD_SOURCES_TOOL],
            )
            found = _sources_from_tool_input(find_tool_input(message, RECORD_SOURCES_TOOL["name"]), search)
            logger.info("Expansion search %s/%s %r returned %s sources", index + 1, len(searches), query, len(found))
            expanded.extend(found)
        except Exception as exc:
            logger.error("Expansion search %r failed: %s", query, exc)

        if index < len(searches) - 1 and delay > 0:
            await asyncio.sleep(delay)

    return expanded


def build_metrics(
    *,
    initial_source_count: int,
    expanded_source_count: int,
    sources: List[Dict[str, Any]],
    target_words: int,
) -> Dict[str, Any]:
    total_words = calculate_total_words(sources)
    coverage = (total_words / target_words) * 100 if target_words > 0 else 0.0
    return {
        "initial_source_count": initial_source_count,
        "expanded_source_count": expanded_source_count,
        "final_source_count": len(sources),
        "total_words": total_words,
        "target_words": target_words,
        "coverage_percent": round(coverage, 1),
    }


async def perform_comprehensive_research(
    topic: str,
    initial_research_fn: InitialResearchFn,
    target_duration: int = 30,
    enable_expansion: bool = True,
    *,
    max_searches: Optional[int] = None,
    delay_seconds: Optional[float] = None,
) -> Dict[str, Any]:
    """Initial research, then gap analysis and expansion, then dedupe."""
    initial = await initial_research_fn(topic) or {}
    initial_sources = list(initial.get("sources") or [])
    target_words = target_word_count(target_duration)

    if not initial_sources:
        logger.error("No initial sources found for %r; skipping expansion", topic)
        return {
            "sources": [],
            "expansion_plan": None,
            "metrics": build_metrics(
                initial_source_count=0,
                expanded_source_count=0,
                sources=[],
                target_words=target_words,
            ),
            "summary": initial.get("summary"),
            "insights": initial.get("insights"),
        }

    combined = list(initial_sources)
    expansion_plan: Optional[Dict[str, Any]] = None
    if enable_expansion:
        expansion_plan = await analyze_research_gaps(topic, initial_sources, target_duration)
        if expansion_plan and expansion_plan.get("expansion_searches"):
            expanded = await execute_expansion_searches(
                expansion_plan,
                max_searches,
                delay_seconds=delay_seconds,
            )
            combined.extend(expanded)

    deduplicated = deduplicate_sources(combined)
    metrics = build_metrics(
        initial_source_count=len(initial_sources),
        expanded_source_count=len(combined) - len(initial_sources),
        sources=deduplicated,
        target_words=target_words,
    )
    logger.info(
        "Comprehensive research for %r: %s sources, %s words (%.1f%% of target)",
        topic,
        metrics["final_source_count"],
        metrics["total_words"],
        metrics["coverage_percent"],
    )
    return {
        "sources": deduplicated,
        "expansion_plan": expansion_plan,
        "metrics": metrics,
        "summary": initial.get("summary"),
        "insights": initial.get("insights"),
    }
