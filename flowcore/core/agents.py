"""Agent executors for task graph subtasks.

Each AgentType maps to one executor:
- Tool agents (research, email outreach, ...) call an external tool callable;
  the core never implements the tool itself
- Internal agents (summary, analysis, ...) build deterministic text from the
  results of the subtasks they depend on
- Compilation assembles the final answer with compile_results()
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from flowcore.core.models import AgentType, Subtask, TaskGraph

logger = logging.getLogger(__name__)

ToolCall = Callable[[AgentType, str], Awaitable[str] | str]

GENERIC_RESEARCH_DESCRIPTION = "Search for relevant information"

# Result used when a tool returns nothing
_EMPTY_TOOL_RESPONSES: dict[AgentType, str] = {
    AgentType.RESEARCH: "No answer was found",
    AgentType.EMAIL_OUTREACH: "Email outreach functionality is not yet fully implemented",
    AgentType.MEETING_SCHEDULER: "Meeting scheduler functionality is not yet fully implemented",
    AgentType.DATA_ANALYZER: "Data analyzer functionality is not yet fully implemented",
    AgentType.LEAD_QUALIFIER: "Lead qualifier functionality is not yet fully implemented",
}

_PREVIEW_CHARS = 100


@dataclass
class SubtaskContext:
    """Everything an executor may read while running one subtask."""

    task_id: str
    original_query: str
    dependency_results: dict[str, str] = field(default_factory=dict)
    # Snapshot of the graph at dispatch time, read by compilation
    task_graph: TaskGraph | None = None

    @property
    def combined_results(self) -> str:
        return "\n\n".join(self.dependency_results.values())


@runtime_checkable
class AgentExecutor(Protocol):
    async def execute(self, subtask: Subtask, context: SubtaskContext) -> str: ...


def determine_research_query(original_query: str, subtask: Subtask) -> str:
    """Use the original query unless the subtask narrows it down."""
    if not subtask.description or GENERIC_RESEARCH_DESCRIPTION in subtask.description:
        return original_query
    return f"{subtask.description} regarding: {original_query}"


class ToolAgentExecutor:
    """Delegates to an external tool callable ``tool(agent_type, query) -> str``."""

    def __init__(self, agent_type: AgentType, tool: ToolCall | None = None):
        self.agent_type = agent_type
        self.tool = tool

    def build_query(self, subtask: Subtask, context: SubtaskContext) -> str:
        if self.agent_type == AgentType.RESEARCH:
            return determine_research_query(context.original_query, subtask)
        return f"{context.original_query} - {subtask.description}"

    async def execute(self, subtask: Subtask, context: SubtaskContext) -> str:
        query = self.build_query(subtask, context)
        response = ""
        if self.tool is not None:
            if inspect.iscoroutinefunction(self.tool):
                response = await self.tool(self.agent_type, query)
            else:
                response = await asyncio.to_thread(self.tool, self.agent_type, query)
        else:
            logger.debug(f"No tool configured for {self.agent_type.value}; query was: {query}")
        return response or _EMPTY_TOOL_RESPONSES[self.agent_type]


def _preview(content: str) -> str:
    return f"{content[:_PREVIEW_CHARS]}..."


class TextAgentExecutor:
    """Deterministic text builder over dependency results."""

    def __init__(self, agent_type: AgentType):
        self.agent_type = agent_type

    async def execute(self, subtask: Subtask, context: SubtaskContext) -> str:
        query = context.original_query
        content = context.combined_results
        match self.agent_type:
            case AgentType.SUMMARY:
                return f'Summary of information about "{query}":\n\n{_preview(content)}'
            case AgentType.ANALYSIS:
                return f'Analysis of information about "{query}":\n\n{_preview(content)}'
            case AgentType.EXPLANATION:
                return f'Explanation of "{query}":\n\n{subtask.description}'
            case AgentType.COMPARISON:
                return f'Comparison for "{query}":\n\n{_preview(content)}'
            case AgentType.RECOMMENDATION:
                findings = [r.splitlines()[0] for r in context.dependency_results.values() if r]
                lines = [f"{i}. Act on: {finding}" for i, finding in enumerate(findings, 1)]
                body = "\n".join(lines) if lines else "1. Gather more information before deciding"
                return f'Recommendations for "{query}":\n\n{body}'
            case AgentType.PLANNING:
                return (
                    f'Plan for "{query}":\n\n'
                    f"1. Review the findings\n2. {subtask.description}\n3. Verify the outcome"
                )
            case _:
                raise ValueError(f"{self.agent_type.value} is not a text agent")


class CompilationAgentExecutor:
    async def execute(self, subtask: Subtask, context: SubtaskContext) -> str:
        if context.task_graph is None:
            raise ValueError("Compilation requires the task graph snapshot")
        return compile_results(context.task_graph)


def build_default_executors(tool: ToolCall | None = None) -> dict[AgentType, AgentExecutor]:
    """One executor per agent type."""
    executors: dict[AgentType, AgentExecutor] = {}
    for agent_type in AgentType:
        match agent_type:
            case (
                AgentType.RESEARCH
                | AgentType.EMAIL_OUTREACH
                | AgentType.MEETING_SCHEDULER
                | AgentType.DATA_ANALYZER
                | AgentType.LEAD_QUALIFIER
            ):
                executors[agent_type] = ToolAgentExecutor(agent_type, tool)
            case (
                AgentType.SUMMARY
                | AgentType.ANALYSIS
                | AgentType.EXPLANATION
                | AgentType.COMPARISON
                | AgentType.RECOMMENDATION
                | AgentType.PLANNING
            ):
                executors[agent_type] = TextAgentExecutor(agent_type)
            case AgentType.COMPILATION:
                executors[agent_type] = CompilationAgentExecutor()
    return executors


def _results_for(task_graph: TaskGraph, agent_type: AgentType) -> list[str]:
    return [s.result for s in task_graph.subtasks if s.agent_type == agent_type and s.result]


def compile_results(task_graph: TaskGraph) -> str:
    """Assemble the visible final answer, grouping results by agent type.

    Pure: the same graph always compiles to the same text.
    """
    compiled = f'Results for your query: "{task_graph.original_query}"\n\n'

    summaries = _results_for(task_graph, AgentType.SUMMARY)
    sections = [
        ("Summary", summaries),
        ("Analysis", _results_for(task_graph, AgentType.ANALYSIS)),
        ("Recommendations", _results_for(task_graph, AgentType.RECOMMENDATION)),
        ("Plan", _results_for(task_graph, AgentType.PLANNING)),
    ]
    # Raw research is only shown when nothing summarized it
    if not summaries:
        sections.append(("Research Findings", _results_for(task_graph, AgentType.RESEARCH)))

    for title, results in sections:
        if results:
            compiled += f"## {title}\n\n" + "\n\n".join(results) + "\n\n"
    return compiled
