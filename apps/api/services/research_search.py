"""Initial research pass backed by the Anthropic web_search tool."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from config import settings
from services.llm import (
    create_message,
    extract_text,
    get_anthropic_client,
    parse_json_response,
    web_search_tool,
)
from services.research_expander import normalize_target_minutes, perform_comprehensive_research

logger = logging.getLogger(__name__)

SYNTHESIS_SOURCE_TYPES = {"synthesis", "ai-generated"}
SYNTHESIS_URL = "#ai-synthesis"
EMPTY_INSIGHTS = {
    "key_statistics": [],
    "expert_quotes": [],
    "common_misconceptions": [],
    "actionable_takeaways": [],
}


def _safe_text(value: Any) -> str:
    return str(value or "").strip()


def _safe_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _empty_insights() -> Dict[str, List[str]]:
    return {key: [] for key in EMPTY_INSIGHTS}


def _normalize_insights(raw: Any) -> Dict[str, List[str]]:
    insights = _empty_insights()
    if not isinstance(raw, dict):
        return insights
    aliases = {
        "key_statistics": ("key_statistics", "keyStatistics"),
        "expert_quotes": ("expert_quotes", "expertQuotes"),
        "common_misconceptions": ("common_misconceptions", "commonMisconceptions"),
        "actionable_takeaways": ("actionable_takeaways", "actionableTakeaways"),
    }
    for key, names in aliases.items():
        for name in names:
            values = raw.get(name)
            if isinstance(values, list):
                insights[key] = [_safe_text(item) for item in values if _safe_text(item)]
                break
    return insights


def _failure(error: str) -> Dict[str, Any]:
    return {
        "success": False,
        "error": error,
        "sources": [],
        "summary": "",
        "provider": "none",
    }


def _research_prompt(
    *,
    query: str,
    topic: str,
    context: str,
    min_sources: int,
    min_content_length: int,
    exclude_urls: Iterable[str],
) -> str:
    lines = [
        "Search the web and research the following topic. Provide current, factual information with real sources.",
        "",
        f'Topic: "{query}"',
    ]
    if topic:
        lines.append(f"Context: {topic}")
    if context:
        lines.append(f"Additional context: {context}")
    excluded = [url for url in exclude_urls if url]
    if excluded:
        lines.append("Do not reuse these already-collected URLs:")
        lines.extend(f"- {url}" for url in excluded[:50])
    lines.append(
        f"""
Instructions:
1. Search for the most recent information about this topic
2. Include specific dates, names, and facts
3. Provide real URLs for every source
4. Find and include AT LEAST {min_sources} different sources with substantial content
5. Each source must have at least {min_content_length} characters of content

Return your findings as a JSON object with this structure:
{{
  "summary": "Comprehensive summary of findings",
  "sources": [
    {{
      "source_url": "URL",
      "source_title": "Title",
      "source_content": "Key information (at least {min_content_length} characters)",
      "source_type": "web",
      "is_starred": false,
      "fact_check_status": "verified",
      "relevance": 0.9
    }}
  ],
  "related_questions": ["Question 1", "Question 2"],
  "insights": {{
    "key_statistics": ["Stat 1"],
    "expert_quotes": ["Quote 1"],
    "common_misconceptions": ["Misconception 1"],
    "actionable_takeaways": ["Takeaway 1"]
  }}
}}

Return ONLY the JSON, no other text."""
    )
    return "\n".join(lines)


def normalize_sources(raw_sources: Any) -> List[Dict[str, Any]]:
    """Fill defaults on LLM-reported sources; positions drive relevance and stars."""
    if not isinstance(raw_sources, list):
        return []
    normalized: List[Dict[str, Any]] = []
    for index, source in enumerate(row for row in raw_sources if isinstance(row, dict)):
        normalized.append(
            {
                "source_url": _safe_text(source.get("source_url")) or f"#source-{index}",
                "source_title": _safe_text(source.get("source_title")) or f"Source {index + 1}",
                "source_content": _safe_text(source.get("source_content")),
                "source_type": _safe_text(source.get("source_type")) or "web",
                "is_starred": bool(source.get("is_starred")) or index < 3,
                "fact_check_status": _safe_text(source.get("fact_check_status")) or "unverified",
                "relevance": _safe_float(source.get("relevance"), round(max(1 - index * 0.1, 0.0), 2)),
            }
        )
    return normalized


def _synthesis_source(content: str, *, title: str = "Research Synthesis", url: str = SYNTHESIS_URL) -> Dict[str, Any]:
    return {
        "source_url": url,
        "source_title": title,
        "source_content": content,
        "source_type": "synthesis",
        "is_starred": True,
        "fact_check_status": "ai-generated",
        "relevance": 1.0,
    }


async def perform_single_research(
    *,
    query: str,
    topic: str = "",
    context: str = "",
    min_sources: Optional[int] = None,
    min_content_length: Optional[int] = None,
    exclude_urls: Iterable[str] = (),
) -> Dict[str, Any]:
    """One web-search-backed research call."""
    client = get_anthropic_client()
    if client is None:
        logger.error("ANTHROPIC_API_KEY not configured; research unavailable")
        return _failure("ANTHROPIC_API_KEY not configured")

    wanted_sources = int(min_sources if min_sources is not None else settings.RESEARCH_MIN_SOURCES)
    wanted_length = int(
        min_content_length if min_content_length is not None else settings.RESEARCH_MIN_CONTENT_LENGTH
    )
    prompt = _research_prompt(
        query=query,
        topic=topic,
        context=context,
        min_sources=max(wanted_sources, 1),
        min_content_length=wanted_length,
        exclude_urls=exclude_urls,
    )

    try:
        message = await create_message(
            client,
            prompt=prompt,
            max_tokens=int(settings.RESEARCH_MAX_TOKENS),
            tools=[web_search_tool()],
            temperature=0.3,
        )
    except Exception as exc:
        logger.error("Research call failed for %r: %s", query, exc)
        return _failure(str(exc))

    text = extract_text(message)
    if not text:
        return _failure("No text content in response")

    try:
        parsed = parse_json_response(text, find_object=True)
        if not isinstance(parsed, dict):
            raise ValueError("Research response is not a JSON object")
    except ValueError as exc:
        logger.warning("Research JSON for %r could not be parsed, using text fallback: %s", query, exc)
        return {
            "success": True,
            "summary": text[:2000],
            "sources": [_synthesis_source(text, title="AI Research Summary", url="#ai-response")],
            "related_questions": [],
            "insights": _empty_insights(),
            "provider": "claude-fallback",
        }

    sources = normalize_sources(parsed.get("sources"))
    summary = _safe_text(parsed.get("summary"))
    if summary:
        sources.insert(0, _synthesis_source(summary))

    related = parsed.get("related_questions") or parsed.get("relatedQuestions") or []
    logger.info("Research pass for %r returned %s sources", query, len(sources))
    return {
        "success": True,
        "summary": summary,
        "sources": sources,
        "related_questions": [_safe_text(item) for item in related if _safe_text(item)] if isinstance(related, list) else [],
        "insights": _normalize_insights(parsed.get("insights")),
        "provider": "claude-web-search",
    }


async def perform_research(
    *,
    query: str,
    topic: str = "",
    context: str = "",
    min_sources: Optional[int] = None,
    min_content_length: Optional[int] = None,
    max_attempts: Optional[int] = None,
) -> Dict[str, Any]:
    """Repeat single research passes until enough unique sources are gathered."""
    wanted = int(min_sources if min_sources is not None else settings.RESEARCH_MIN_SOURCES)
    attempts_allowed = max(int(max_attempts if max_attempts is not None else settings.RESEARCH_MAX_ATTEMPTS), 1)

    all_sources: List[Dict[str, Any]] = []
    excluded_urls: set = set()
    related_questions: List[str] = []
    insights = _empty_insights()
    last_error: Optional[str] = None
    provider = "none"
    attempt = 0

    while len(all_sources) < wanted and attempt < attempts_allowed:
        attempt += 1
        iteration_query = query
        if attempt > 1:
            iteration_query = (
                f'Find additional unique sources about "{query}" that provide different perspectives or information. '
                f"Focus on sources not yet covered. Already found {len(all_sources)} sources."
            )
        logger.info("Research attempt %s/%s for %r (%s sources so far)", attempt, attempts_allowed, query, len(all_sources))

        result = await perform_single_research(
            query=iteration_query,
            topic=topic,
            context=context,
            min_sources=wanted - len(all_sources),
            min_content_length=min_content_length,
            exclude_urls=sorted(excluded_urls),
        )
        if not result.get("success"):
            last_error = result.get("error")
            logger.warning("Research attempt %s for %r failed: %s", attempt, query, last_error)
            continue

        provider = result.get("provider", provider)
        for source in result.get("sources", []):
            if source.get("source_type") in SYNTHESIS_SOURCE_TYPES:
                all_sources.append(source)
                continue
            url = source.get("source_url")
            if url in excluded_urls:
                continue
            excluded_urls.add(url)
            all_sources.append(source)
        for question in result.get("related_questions", []):
            if question not in related_questions:
                related_questions.append(question)
        for key, values in (result.get("insights") or {}).items():
            merged = insights.setdefault(key, [])
            for value in values:
                if value not in merged:
                    merged.append(value)

    if not all_sources and last_error:
        return {**_failure(last_error), "iterations": attempt}

    summary = next(
        (source.get("source_content") for source in all_sources if source.get("source_type") == "synthesis"),
        "Research completed across multiple sources",
    )
    total_content = sum(len(source.get("source_content") or "") for source in all_sources)
    logger.info("Research complete for %r: %s sources, %s characters", query, len(all_sources), total_content)
    return {
        "success": True,
        "summary": summary,
        "sources": all_sources,
        "related_questions": related_questions,
        "insights": insights,
        "citations": [source for source in all_sources if source.get("source_type") == "web"],
        "provider": provider,
        "iterations": attempt,
        "total_content": total_content,
    }


async def perform_enhanced_research(
    *,
    query: str,
    topic: str = "",
    context: str = "",
    target_duration: Optional[Any] = None,
    enable_expansion: bool = True,
    min_sources: Optional[int] = None,
    min_content_length: Optional[int] = None,
) -> Dict[str, Any]:
    """Research with optional gap analysis and expansion toward a target length."""
    if not enable_expansion:
        return await perform_research(
            query=query,
            topic=topic,
            context=context,
            min_sources=min_sources,
            min_content_length=min_content_length,
        )

    target_minutes = normalize_target_minutes(target_duration)
    initial_result: Dict[str, Any] = {}

    async def _initial_research(search_topic: str) -> Dict[str, Any]:
        result = await perform_research(
            query=search_topic,
            topic=topic or search_topic,
            context=context,
            min_sources=min_sources,
            min_content_length=min_content_length,
        )
        initial_result.update(result)
        return {
            "sources": result.get("sources") or [],
            "summary": result.get("summary"),
            "insights": result.get("insights"),
        }

    result = await perform_comprehensive_research(query, _initial_research, target_minutes, True)
    if not result["sources"] and initial_result.get("success") is False:
        return _failure(initial_result.get("error") or "Research failed")

    return {
        "success": True,
        "summary": result.get("summary") or "",
        "sources": result["sources"],
        "related_questions": initial_result.get("related_questions", []),
        "insights": result.get("insights") or _empty_insights(),
        "expansion_plan": result.get("expansion_plan"),
        "metrics": result.get("metrics"),
        "target_minutes": target_minutes,
        "provider": "gap-enhanced",
    }
