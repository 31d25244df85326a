import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from services.research_expander import (
    analyze_research_gaps,
    calculate_total_words,
    deduplicate_sources,
    execute_expansion_searches,
    normalize_target_minutes,
    perform_comprehensive_research,
)


def _text_message(text):
    return SimpleNamespace(content=[SimpleNamespace(type="text", text=text)], stop_reason="end_turn")


def _record_sources_message(sources):
    return SimpleNamespace(
        content=[
            SimpleNamespace(type="server_tool_use", name="web_search", input={"query": "q"}),
            SimpleNamespace(type="text", text="Recording the best sources."),
            SimpleNamespace(type="tool_use", name="record_sources", input={"sources": sources}),
        ],
        stop_reason="tool_use",
    )


class FakeMessages:
    def __init__(self, plan_text, search_results):
        self.plan_text = plan_text
        self.search_results = list(search_results)
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        tool_names = [tool.get("name") for tool in kwargs.get("tools") or []]
        if "record_sources" not in tool_names:
            return _text_message(self.plan_text)
        result = self.search_results.pop(0)
        if isinstance(result, Exception):
            raise result
        return _record_sources_message(result)


class FakeClient:
    def __init__(self, plan_text="{}", search_results=()):
        self.messages = FakeMessages(plan_text, search_results)


def _source(url, content, **extra):
    return {"source_url": url, "source_title": url, "source_content": content, "source_type": "web", **extra}


def _words(prefix, count):
    return f"{prefix} " + " ".join(["detail"] * (count - len(prefix.split())))


def _plan(queries):
    return json.dumps(
        {
            "core_facts_covered": ["The breach exposed customer records"],
            "identified_gaps": [
                {"category": "Legal Framework", "missing_info": "Disclosure rules", "why_important": "Context"}
            ],
            "expansion_searches": [
                {"query": query, "target": f"{query} context", "expected_value": "fills a gap"} for query in queries
            ],
        }
    )


def test_total_words_handles_empty_and_whitespace_content():
    assert calculate_total_words([]) == 0
    assert calculate_total_words(None) == 0
    assert calculate_total_words([{"source_content": "   \n\t "}, {"source_content": None}, {}]) == 0
    assert calculate_total_words([{"source_content": "one two  three"}, {"source_content": "four\nfive"}]) == 5


def test_deduplicate_drops_repeated_urls_fingerprints_and_short_content():
    long_a = "A detailed explanation of how credential stuffing attacks work in practice and why they succeed."
    long_b = "Regulators in several jurisdictions now require disclosure of breaches within seventy two hours."
    sources = [
        _source("https://a.example/1", long_a),
        _source("https://a.example/1", long_b),
        _source("https://b.example/2", long_a.upper()),
        _source("https://c.example/3", "Too short to matter."),
        _source("https://d.example/4", long_b),
    ]

    unique = deduplicate_sources(sources)

    assert [row["source_url"] for row in unique] == ["https://a.example/1", "https://d.example/4"]
    assert deduplicate_sources(unique) == unique
    assert deduplicate_sources(None) == []


@pytest.mark.parametrize(
    "value,expected",
    [(30, 30), (600, 10), (125, 3), (90, 90), (None, 10), (0, 10), ("bad", 10)],
)
def test_normalize_target_minutes_accepts_minutes_or_seconds(value, expected):
    assert normalize_target_minutes(value) == expected


@pytest.mark.asyncio
async def test_gap_analysis_skipped_when_coverage_already_met():
    sources = [_source("https://a.example/1", _words("covered topic", 1200))]
    with patch("services.research_expander.get_anthropic_client") as client_factory:
        plan = await analyze_research_gaps("topic", sources, target_duration=10)
    assert plan is None
    client_factory.assert_not_called()


@pytest.mark.asyncio
async def test_gap_analysis_parses_fenced_plan():
    fake = FakeClient(plan_text="```json\n" + _plan(["breach disclosure law", '"password reuse psychology"']) + "\n```")
    sources = [_source("https://a.example/1", _words("initial coverage", 300))]

    with patch("services.research_expander.get_anthropic_client", return_value=fake):
        plan = await analyze_research_gaps("Data breach", sources, target_duration=10)

    assert plan["error"] is None
    assert [row["query"] for row in plan["expansion_searches"]] == [
        "breach disclosure law",
        "password reuse psychology",
    ]
    assert plan["identified_gaps"][0]["category"] == "Legal Framework"
    assert "tools" not in fake.messages.calls[0]


@pytest.mark.asyncio
async def test_gap_analysis_returns_empty_plan_on_bad_json_or_missing_client():
    sources = [_source("https://a.example/1", _words("initial coverage", 300))]

    with patch("services.research_expander.get_anthropic_client", return_value=FakeClient(plan_text="not json")):
        plan = await analyze_research_gaps("Data breach", sources, target_duration=10)
    assert plan["expansion_searches"] == []
    assert plan["error"]

    with patch("services.research_expander.get_anthropic_client", return_value=None):
        plan = await analyze_research_gaps("Data breach", sources, target_duration=10)
    assert plan["expansion_searches"] == []
    assert plan["error"] == "ANTHROPIC_API_KEY not configured"


@pytest.mark.asyncio
async def test_expansion_searches_use_recorded_sources_and_skip_failures():
    plan = json.loads(_plan(["first query", "second query", "third query"]))
    fake = FakeClient(
        search_results=[
            RuntimeError("search backend unavailable"),
            [
                {"url": "https://law.example/a", "title": "Law A", "content": _words("law a", 150)},
                {"url": "https://law.example/a", "title": "Law A again", "content": _words("law a dup", 150)},
                {"url": "https://law.example/b", "title": "Tiny", "content": "too short"},
            ],
            [{"url": "https://psych.example/c", "title": "", "content": _words("psych c", 200)}],
        ]
    )

    with patch("services.research_expander.get_anthropic_client", return_value=fake), patch(
        "services.research_expander.asyncio.sleep", new_callable=AsyncMock
    ) as sleep:
        sources = await execute_expansion_searches(plan, delay_seconds=2.0)

    assert [row["source_url"] for row in sources] == ["https://law.example/a", "https://psych.example/c"]
    assert sources[0]["expansion_query"] == "second query"
    assert sources[0]["search_category"] == "second query context"
    assert sources[0]["relevance"] == 0.75
    assert sources[0]["fact_check_status"] == "pending"
    assert sources[1]["source_title"] == "Research Source"
    assert sleep.await_count == 2
    tool_names = [tool["name"] for tool in fake.messages.calls[0]["tools"]]
    assert tool_names == ["web_search", "record_sources"]


@pytest.mark.asyncio
async def test_expansion_respects_max_searches_and_empty_plan():
    plan = json.loads(_plan(["q1", "q2", "q3"]))
    fake = FakeClient(search_results=[[{"url": "https://x.example/1", "title": "X", "content": _words("x", 150)}]])

    with patch("services.research_expander.get_anthropic_client", return_value=fake):
        sources = await execute_expansion_searches(plan, max_searches=1, delay_seconds=0)
        assert await execute_expansion_searches({"expansion_searches": []}) == []
        assert await execute_expansion_searches(None) == []

    assert len(sources) == 1
    assert len(fake.messages.calls) == 1


@pytest.mark.asyncio
async def test_expansion_keeps_valid_sources_when_one_url_is_malformed():
    plan = json.loads(_plan(["only query"]))
    fake = FakeClient(
        search_results=[
            [
                {"url": "https://ok.example/a", "title": "A", "content": _words("source a", 150)},
                {"url": "ok.example/c", "title": "Relative", "content": _words("source c", 150)},
                {"url": "https://ok.example/b", "title": "B", "content": _words("source b", 150)},
            ]
        ]
    )

    with patch("services.research_expander.get_anthropic_client", return_value=fake):
        sources = await execute_expansion_searches(plan, delay_seconds=0)

    assert [row["source_url"] for row in sources] == ["https://ok.example/a", "https://ok.example/b"]


@pytest.mark.asyncio
async def test_gap_analysis_drops_blank_queries_and_keeps_the_rest():
    raw = json.loads(_plan(["a", "b", "c", "d", ""]))
    raw["identified_gaps"].append("not an object")
    raw["expansion_searches"].append({"target": "missing query"})
    fake = FakeClient(plan_text=json.dumps(raw))
    sources = [_source("https://a.example/1", _words("initial coverage", 300))]

    with patch("services.research_expander.get_anthropic_client", return_value=fake):
        plan = await analyze_research_gaps("Data breach", sources, target_duration=10)

    assert plan["error"] is None
    assert [row["query"] for row in plan["expansion_searches"]] == ["a", "b", "c", "d"]
    assert len(plan["identified_gaps"]) == 1


@pytest.mark.asyncio
async def test_comprehensive_research_reaches_target_coverage():
    initial_sources = [_source(f"https://initial.example/{i}", _words(f"initial finding {i}", 500)) for i in range(4)]
    queries = [f"angle {i}" for i in range(6)]
    fake = FakeClient(
        plan_text=_plan(queries),
        search_results=[
            [{"url": f"https://expanded.example/{i}", "title": f"E{i}", "content": _words(f"expansion topic {i}", 432)}]
            for i in range(6)
        ],
    )

    async def initial_research(topic):
        return {"sources": initial_sources, "summary": "Initial summary", "insights": {"key_statistics": ["1"]}}

    with patch("services.research_expander.get_anthropic_client", return_value=fake):
        result = await perform_comprehensive_research(
            "Data breach",
            initial_research,
            target_duration=30,
            delay_seconds=0,
        )
        second_plan = await analyze_research_gaps("Data breach", result["sources"], 30)

    metrics = result["metrics"]
    assert metrics["initial_source_count"] == 4
    assert metrics["expanded_source_count"] == 6
    assert metrics["final_source_count"] == 10
    assert metrics["total_words"] == 4592
    assert metrics["target_words"] == 4500
    assert metrics["coverage_percent"] == 102.0
    assert result["summary"] == "Initial summary"
    assert len(result["expansion_plan"]["expansion_searches"]) == 6
    assert second_plan is None


@pytest.mark.asyncio
async def test_comprehensive_research_without_sources_or_expansion():
    async def empty_research(topic):
        return {"sources": []}

    result = await perform_comprehensive_research("Nothing", empty_research, target_duration=10)
    assert result["sources"] == []
    assert result["expansion_plan"] is None
    assert result["metrics"]["coverage_percent"] == 0.0

    duplicated = [_source("https://a.example/1", _words("same body text here", 80))] * 2

    async def duplicate_research(topic):
        return {"sources": duplicated}

    with patch("services.research_expander.get_anthropic_client") as client_factory:
        result = await perform_comprehensive_research("Dupes", duplicate_research, 10, enable_expansion=False)
    client_factory.assert_not_called()
    assert result["metrics"]["final_source_count"] == 1
    assert result["expansion_plan"] is None
