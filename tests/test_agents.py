"""Tests for agent executors and result compilation."""

import asyncio

import pytest

from flowcore.core.agents import (
    CompilationAgentExecutor,
    SubtaskContext,
    TextAgentExecutor,
    ToolAgentExecutor,
    build_default_executors,
    compile_results,
    determine_research_query,
)
from flowcore.core.models import AgentType, Subtask, SubtaskStatus, TaskGraph


def _completed(subtask_id, agent_type, result):
    return Subtask(
        id=subtask_id,
        description=subtask_id,
        agent_type=agent_type,
        status=SubtaskStatus.COMPLETED,
        result=result,
    )


class TestResearchQuery:
    def test_generic_description_uses_original_query(self):
        subtask = Subtask(id="r", description="Search for relevant information online")
        assert determine_research_query("electric cars", subtask) == "electric cars"

    def test_specific_description_narrows_query(self):
        subtask = Subtask(id="r", description="Find battery suppliers")
        assert determine_research_query("electric cars", subtask) == (
            "Find battery suppliers regarding: electric cars"
        )


class TestToolAgentExecutor:
    def test_sync_tool(self):
        calls = []

        def tool(agent_type, query):
            calls.append((agent_type, query))
            return "found it"

        executor = ToolAgentExecutor(AgentType.RESEARCH, tool)
        context = SubtaskContext(task_id="t", original_query="q")
        subtask = Subtask(id="r", description="Search for relevant information")
        assert asyncio.run(executor.execute(subtask, context)) == "found it"
        assert calls == [(AgentType.RESEARCH, "q")]

    def test_async_tool_gets_combined_query(self):
        async def tool(agent_type, query):
            return f"{agent_type.value}: {query}"

        executor = ToolAgentExecutor(AgentType.EMAIL_OUTREACH, tool)
        context = SubtaskContext(task_id="t", original_query="q")
        subtask = Subtask(id="e", description="email the team", agent_type=AgentType.EMAIL_OUTREACH)
        assert asyncio.run(executor.execute(subtask, context)) == "email-outreach: q - email the team"

    def test_empty_response_falls_back(self):
        executor = ToolAgentExecutor(AgentType.RESEARCH)
        context = SubtaskContext(task_id="t", original_query="q")
        assert asyncio.run(executor.execute(Subtask(id="r", description="x"), context)) == "No answer was found"

    def test_tool_errors_propagate(self, mocker):
        tool = mocker.Mock(side_effect=RuntimeError("search down"))
        executor = ToolAgentExecutor(AgentType.RESEARCH, tool)
        context = SubtaskContext(task_id="t", original_query="q")
        with pytest.raises(RuntimeError, match="search down"):
            asyncio.run(executor.execute(Subtask(id="r", description="x"), context))
        tool.assert_called_once()


class TestTextAgentExecutor:
    def test_summary_previews_dependency_results(self):
        context = SubtaskContext(task_id="t", original_query="q", dependency_results={"r": "x" * 150})
        result = asyncio.run(TextAgentExecutor(AgentType.SUMMARY).execute(Subtask(id="s", description="d"), context))
        assert result == 'Summary of information about "q":\n\n' + "x" * 100 + "..."

    def test_explanation_uses_description(self):
        context = SubtaskContext(task_id="t", original_query="q")
        subtask = Subtask(id="e", description="Explain it simply")
        result = asyncio.run(TextAgentExecutor(AgentType.EXPLANATION).execute(subtask, context))
        assert result == 'Explanation of "q":\n\nExplain it simply'

    def test_recommendation_lists_findings(self):
        context = SubtaskContext(
            task_id="t", original_query="q", dependency_results={"a": "Cheap\nmore", "b": "Fast"}
        )
        result = asyncio.run(TextAgentExecutor(AgentType.RECOMMENDATION).execute(Subtask(id="r", description="d"), context))
        assert "1. Act on: Cheap" in result
        assert "2. Act on: Fast" in result

    def test_tool_type_is_rejected(self):
        context = SubtaskContext(task_id="t", original_query="q")
        with pytest.raises(ValueError):
            asyncio.run(TextAgentExecutor(AgentType.RESEARCH).execute(Subtask(id="r", description="d"), context))


class TestDefaultExecutors:
    def test_every_agent_type_covered(self):
        executors = build_default_executors()
        assert set(executors) == set(AgentType)
        assert isinstance(executors[AgentType.RESEARCH], ToolAgentExecutor)
        assert isinstance(executors[AgentType.PLANNING], TextAgentExecutor)
        assert isinstance(executors[AgentType.COMPILATION], CompilationAgentExecutor)

    def test_compilation_requires_snapshot(self):
        context = SubtaskContext(task_id="t", original_query="q")
        with pytest.raises(ValueError):
            asyncio.run(CompilationAgentExecutor().execute(Subtask(id="c", description="d"), context))


class TestCompileResults:
    def test_sections_in_order(self):
        graph = TaskGraph(
            id="t",
            original_query="q",
            subtasks=[
                _completed("p", AgentType.PLANNING, "the plan"),
                _completed("s", AgentType.SUMMARY, "the summary"),
                _completed("r", AgentType.RESEARCH, "raw findings"),
                _completed("a", AgentType.ANALYSIS, "the analysis"),
            ],
        )
        assert compile_results(graph) == (
            'Results for your query: "q"\n\n'
            "## Summary\n\nthe summary\n\n"
            "## Analysis\n\nthe analysis\n\n"
            "## Plan\n\nthe plan\n\n"
        )

    def test_research_shown_without_summary(self):
        graph = TaskGraph(
            id="t",
            original_query="q",
            subtasks=[_completed("r1", AgentType.RESEARCH, "one"), _completed("r2", AgentType.RESEARCH, "two")],
        )
        assert compile_results(graph).endswith("## Research Findings\n\none\n\ntwo\n\n")

    def test_is_pure(self):
        graph = TaskGraph(
            id="t",
            original_query="q",
            subtasks=[_completed("s", AgentType.SUMMARY, "sum"), _completed("x", AgentType.RECOMMENDATION, "rec")],
        )
        first = compile_results(graph)
        assert compile_results(graph.model_copy(deep=True)) == first
        assert compile_results(graph) == first

    def test_skips_empty_results(self):
        graph = TaskGraph(
            id="t",
            original_query="q",
            subtasks=[Subtask(id="s", description="d", agent_type=AgentType.SUMMARY)],
        )
        assert compile_results(graph) == 'Results for your query: "q"\n\n'
