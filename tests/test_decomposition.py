"""Tests for the task decomposition gateway and keyword fallback."""

import asyncio
import json
import re

import pytest

from flowcore.core.decomposition import (
    FALLBACK_ANALYSIS,
    GatewayError,
    TaskDecompositionGateway,
    generate_task_id,
    keyword_fallback,
    salvage_payload,
)
from flowcore.core.models import AgentType, TaskGraphStatus
from flowcore.core.parser import ParsingError


class FakeBackend:
    """Model backend returning a canned response (or raising)."""

    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.prompts = []

    async def complete(self, system_prompt, user_prompt):
        self.prompts.append((system_prompt, user_prompt))
        if self.error is not None:
            raise self.error
        return self.response


def _gateway(backend=None):
    return TaskDecompositionGateway(backend, id_factory=lambda: "task_1")


MODEL_PAYLOAD = {
    "analysis": "Research first, then summarize",
    "subtasks": [
        {"description": "Find sources", "agentType": "research-agent", "dependsOn": []},
        {"description": "Summarize sources", "agentType": "summary", "dependsOn": [1]},
        {"description": "Do magic", "agentType": "wizard", "dependsOn": ["2"]},
    ],
}


class TestGenerateTaskId:
    def test_format(self):
        assert re.fullmatch(r"task_\d+_[0-9a-f]{5}", generate_task_id())


class TestKeywordFallback:
    def test_no_keywords_gives_single_research(self):
        graph = keyword_fallback("abc", "t1")
        assert len(graph.subtasks) == 1
        subtask = graph.subtasks[0]
        assert subtask.id == "t1-research"
        assert subtask.agent_type == AgentType.RESEARCH
        assert subtask.depends_on == []
        assert graph.analysis == FALLBACK_ANALYSIS
        assert graph.status == TaskGraphStatus.PLANNING

    def test_research_and_summary_get_compilation(self):
        graph = keyword_fallback("Research and summarize electric cars", "t1")
        assert [s.id for s in graph.subtasks] == ["t1-research", "t1-summarize", "t1-compile"]
        assert graph.get_subtask("t1-summarize").depends_on == ["t1-research"]
        compile_step = graph.get_subtask("t1-compile")
        assert compile_step.agent_type == AgentType.COMPILATION
        assert compile_step.depends_on == ["t1-research", "t1-summarize"]

    def test_dependencies_on_unfired_rules_dropped(self):
        graph = keyword_fallback("Summarize this article", "t1")
        assert [s.id for s in graph.subtasks] == ["t1-summarize"]
        assert graph.subtasks[0].depends_on == []

    def test_matching_is_case_insensitive(self):
        graph = keyword_fallback("EXPLAIN quantum computing", "t1")
        assert graph.subtasks[0].agent_type == AgentType.EXPLANATION


class TestSalvagePayload:
    def test_numbered_listing(self):
        raw = (
            "analysis: look things up, then summarize\n"
            "subtasks:\n"
            "1. description: Find sources agentType: research dependsOn: []\n"
            "2. description: Summarize agentType: summary dependsOn: [1]\n"
        )
        payload = salvage_payload(raw)
        assert payload.analysis == "look things up, then summarize"
        assert [s.description for s in payload.subtasks] == ["Find sources", "Summarize"]
        assert payload.subtasks[1].agent_type == "summary"
        assert payload.subtasks[1].depends_on == [1]

    def test_nothing_to_salvage(self):
        with pytest.raises(ParsingError):
            salvage_payload("I cannot help with that")


class TestAnalyzeQuery:
    def test_model_payload(self):
        backend = FakeBackend(response=f"<think>hmm</think>```json\n{json.dumps(MODEL_PAYLOAD)}\n```")
        graph = asyncio.run(_gateway(backend).analyze_query("electric cars"))

        assert graph.id == "task_1"
        assert graph.analysis == "Research first, then summarize"
        assert [s.id for s in graph.subtasks] == ["task_1-subtask-1", "task_1-subtask-2", "task_1-subtask-3"]
        assert graph.subtasks[0].agent_type == AgentType.RESEARCH
        assert graph.subtasks[1].depends_on == ["task_1-subtask-1"]
        # Unknown agent types degrade to research
        assert graph.subtasks[2].agent_type == AgentType.RESEARCH
        assert graph.subtasks[2].depends_on == ["task_1-subtask-2"]
        assert 'Break down this query into subtasks: "electric cars"' in backend.prompts[0][1]

    def test_unparseable_output_falls_back(self):
        graph = asyncio.run(_gateway(FakeBackend(response="I cannot help with that")).analyze_query("abc"))
        assert len(graph.subtasks) == 1
        assert graph.subtasks[0].agent_type == AgentType.RESEARCH
        assert graph.analysis == FALLBACK_ANALYSIS

    def test_schema_mismatch_falls_back(self):
        backend = FakeBackend(response='{"analysis": "x", "subtasks": []}')
        graph = asyncio.run(_gateway(backend).analyze_query("abc"))
        assert graph.analysis == FALLBACK_ANALYSIS

    def test_backend_error_falls_back(self):
        graph = asyncio.run(_gateway(FakeBackend(error=TimeoutError("slow"))).analyze_query("abc"))
        assert graph.subtasks[0].id == "task_1-research"

    def test_empty_response_falls_back(self):
        graph = asyncio.run(_gateway(FakeBackend(response="   ")).analyze_query("abc"))
        assert graph.analysis == FALLBACK_ANALYSIS

    def test_no_backend_falls_back(self):
        graph = asyncio.run(_gateway().analyze_query("abc"))
        assert [s.id for s in graph.subtasks] == ["task_1-research"]


class TestParsePayload:
    def test_gateway_error_when_unrecoverable(self):
        with pytest.raises(GatewayError):
            _gateway().parse_payload("nothing useful")

    def test_salvage_used_for_listing(self):
        raw = "subtasks:\n1. description: Find data agent: research\n"
        payload = _gateway().parse_payload(raw)
        assert payload.subtasks[0].description == "Find data"
