"""Task decomposition gateway.

Turns a free-text query into a TaskGraph. A model backend is asked for a
payload of the form:

    {"analysis": "...",
     "subtasks": [{"description": "...", "agentType": "research", "dependsOn": []}, ...]}

If there is no backend, the call fails, or the payload cannot be recovered,
a deterministic keyword matcher builds the graph instead. Decomposition
therefore never fails.
"""

from __future__ import annotations

import logging
import re
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, Field, ValidationError, field_validator

from flowcore.core.models import AgentType, Subtask, TaskGraph, TaskGraphStatus
from flowcore.core.parser import InvalidOutputError, ParsingError, parse_model_output, strip_reasoning

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are a task routing expert. Your job is to break down complex queries into subtasks that can be assigned to specialized agents.
Available agent types: research, email-outreach, meeting-scheduler, data-analyzer, lead-qualifier
Available internal task types: summary, analysis, explanation, comparison, recommendation, planning, compilation

Rules:
1. Break down the query into logical, sequential subtasks
2. Assign each subtask to an appropriate agent or internal task
3. Consider dependencies - some tasks may require results from previous tasks
4. For research or information gathering, always use 'research'
5. Keep your analysis concise but thorough
6. Research should generally come before analysis or summary
7. Compilation should be the final step if multiple subtasks are created

Format your response as a JSON object with these fields:
- analysis: a brief explanation of your approach
- subtasks: an array of subtasks, each with:
  - description: clear description of the subtask
  - agentType: the agent or task type to handle this subtask
  - dependsOn: an array of subtask numbers that must complete first (empty array for independent tasks)"""

FALLBACK_ANALYSIS = "Breaking down the task into manageable subtasks"
SALVAGED_ANALYSIS = "Breaking down the query into manageable subtasks"


class GatewayError(Exception):
    """Decomposition through the model backend failed or was unparseable."""

    pass


@runtime_checkable
class ModelBackend(Protocol):
    """Anything that can answer a system/user prompt pair with text."""

    async def complete(self, system_prompt: str, user_prompt: str) -> str: ...


def generate_task_id() -> str:
    return f"task_{int(time.time() * 1000)}_{uuid.uuid4().hex[:5]}"


# --- Payload schema ---


class ProposedSubtask(BaseModel):
    model_config = {"populate_by_name": True}

    description: str = Field(min_length=1)
    agent_type: str = Field(default="research", alias="agentType")
    depends_on: list[int | str] = Field(default_factory=list, alias="dependsOn")

    @field_validator("depends_on", mode="before")
    @classmethod
    def coerce_depends_on(cls, v):
        if v is None:
            return []
        if isinstance(v, (int, str)):
            return [v]
        return v


class DecompositionPayload(BaseModel):
    analysis: str = Field(min_length=1)
    subtasks: list[ProposedSubtask] = Field(min_length=1)


def salvage_payload(raw_output: str) -> DecompositionPayload:
    """Recover a payload from a numbered listing when the model skipped JSON.

    Expects text like:

        analysis: look things up, then summarize
        subtasks:
        1. description: Find sources agentType: research dependsOn: []
        2. description: Summarize agentType: summary dependsOn: [1]

    Raises:
        ParsingError: If no subtask can be recovered.
    """
    text = strip_reasoning(raw_output)
    analysis_match = re.search(r"analysis[:\s]*(.*?)(?=subtasks|\n|$)", text, re.IGNORECASE)
    analysis = (analysis_match.group(1).strip() if analysis_match else "") or SALVAGED_ANALYSIS

    subtasks_match = re.search(r"subtasks[:\s]*([\s\S]*?)(?=\n\n\w|\Z)", text, re.IGNORECASE)
    if not subtasks_match:
        raise ParsingError("Could not find subtasks in model output")

    proposed: list[ProposedSubtask] = []
    for entry in re.split(r"\d+\.\s+", subtasks_match.group(1))[1:]:
        entry = entry.strip()
        desc_match = re.search(r"description[:\s]*(.*?)(?=agent|\n|$)", entry, re.IGNORECASE)
        agent_match = re.search(r"agent(?:[_ ]?type)?[:\s]*[\"']?([\w-]+)", entry, re.IGNORECASE)
        if not desc_match or not agent_match:
            continue
        description = re.sub(r"[\"',]", "", desc_match.group(1)).strip()
        if not description:
            continue
        depends_on: list[int | str] = []
        deps_match = re.search(r"depends[_ ]?on[:\s]*\[(.*?)\]", entry, re.IGNORECASE)
        if deps_match:
            depends_on = [int(d) for d in re.findall(r"\d+", deps_match.group(1))]
        proposed.append(
            ProposedSubtask(description=description, agent_type=agent_match.group(1), depends_on=depends_on)
        )

    if not proposed:
        raise ParsingError("Could not extract any subtask from model output")
    return DecompositionPayload(analysis=analysis, subtasks=proposed)


# --- Keyword fallback ---


@dataclass(frozen=True)
class KeywordRule:
    suffix: str
    keywords: tuple[str, ...]
    description: str
    agent_type: AgentType
    depends_on: tuple[str, ...] = field(default_factory=tuple)


KEYWORD_RULES: tuple[KeywordRule, ...] = (
    KeywordRule(
        "research",
        ("research", "information", "find", "search", "look up", "learn about"),
        "Search for relevant information online",
        AgentType.RESEARCH,
    ),
    KeywordRule(
        "summarize",
        ("summarize", "summary", "brief", "overview"),
        "Create a concise summary of the information",
        AgentType.SUMMARY,
        ("research",),
    ),
    KeywordRule(
        "analyze",
        ("analyze", "evaluation", "assessment", "review", "critique"),
        "Perform analysis on the gathered information",
        AgentType.ANALYSIS,
        ("research",),
    ),
    KeywordRule(
        "explain",
        ("explain", "clarify", "elaborate", "describe"),
        "Explain concepts in a clear and understandable way",
        AgentType.EXPLANATION,
    ),
    KeywordRule(
        "compare",
        ("compare", "contrast", "difference", "similarity", "versus", "vs"),
        "Compare different aspects of the gathered information",
        AgentType.COMPARISON,
        ("research",),
    ),
    KeywordRule(
        "recommend",
        ("recommend", "suggestion", "advise", "best", "top"),
        "Offer recommendations based on the information",
        AgentType.RECOMMENDATION,
        ("research", "analyze"),
    ),
    KeywordRule(
        "plan",
        ("plan", "steps", "procedure", "how to", "process"),
        "Develop a step-by-step plan or procedure",
        AgentType.PLANNING,
        ("research",),
    ),
)


def keyword_fallback(query: str, task_id: str) -> TaskGraph:
    """Deterministic decomposition from the keyword rule table.

    Matching is a case-insensitive substring test. Dependencies on rules that
    did not fire are dropped, and a compilation subtask depending on every
    other subtask is appended when more than one rule fired.
    """
    lowered = query.lower()
    subtasks: list[Subtask] = []
    for rule in KEYWORD_RULES:
        if any(keyword in lowered for keyword in rule.keywords):
            subtasks.append(
                Subtask(
                    id=f"{task_id}-{rule.suffix}",
                    description=rule.description,
                    agent_type=rule.agent_type,
                    depends_on=[f"{task_id}-{dep}" for dep in rule.depends_on],
                )
            )

    if not subtasks:
        subtasks.append(
            Subtask(
                id=f"{task_id}-research",
                description="Search for relevant information about the query",
                agent_type=AgentType.RESEARCH,
            )
        )

    added = {s.id for s in subtasks}
    for subtask in subtasks:
        subtask.depends_on = [d for d in subtask.depends_on if d in added]

    if len(subtasks) > 1:
        subtasks.append(
            Subtask(
                id=f"{task_id}-compile",
                description="Combine and organize all gathered information into a coherent response",
                agent_type=AgentType.COMPILATION,
                depends_on=[s.id for s in subtasks],
            )
        )

    return TaskGraph(
        id=task_id,
        original_query=query,
        analysis=FALLBACK_ANALYSIS,
        subtasks=subtasks,
        status=TaskGraphStatus.PLANNING,
    )


# --- Gateway ---


def _normalize_agent_type(value: str, subtask_id: str) -> AgentType:
    name = value.strip().lower().replace("_", "-")
    if name.endswith("-agent"):
        name = name[: -len("-agent")]
    agent_type = AgentType.coerce(name)
    if agent_type is None:
        logger.warning(f"Invalid agent type '{value}' for subtask {subtask_id}, defaulting to research")
        return AgentType.RESEARCH
    return agent_type


def _normalize_dependency(dep: int | str, task_id: str) -> str:
    """1-based ordinals map to generated ids; literal ids pass through."""
    if isinstance(dep, int):
        return f"{task_id}-subtask-{dep}"
    text = str(dep).strip()
    if text.isdigit():
        return f"{task_id}-subtask-{int(text)}"
    return text


class TaskDecompositionGateway:
    """Decompose free text into a TaskGraph, falling back to keyword rules."""

    def __init__(
        self,
        backend: ModelBackend | None = None,
        id_factory: Callable[[], str] = generate_task_id,
    ):
        self.backend = backend
        self.id_factory = id_factory

    async def analyze_query(self, query: str) -> TaskGraph:
        task_id = self.id_factory()
        try:
            task_graph = await self._analyze_with_model(query, task_id)
            logger.info(f"Decomposed query into {len(task_graph.subtasks)} subtasks via model")
            return task_graph
        except GatewayError as e:
            logger.warning(f"Falling back to keyword-based analysis: {e}")
            return keyword_fallback(query, task_id)

    async def _analyze_with_model(self, query: str, task_id: str) -> TaskGraph:
        if self.backend is None:
            raise GatewayError("No model backend configured")

        user_prompt = f'Break down this query into subtasks: "{query}"'
        try:
            raw_output = await self.backend.complete(SYSTEM_PROMPT, user_prompt)
        except Exception as e:
            raise GatewayError(f"Model call failed: {e}") from e

        if not isinstance(raw_output, str) or not raw_output.strip():
            raise GatewayError("Model returned an empty response")

        payload = self.parse_payload(raw_output)
        return self.build_task_graph(query, task_id, payload)

    def parse_payload(self, raw_output: str) -> DecompositionPayload:
        """Extract and validate the payload, salvaging numbered listings.

        Raises:
            GatewayError: If nothing usable can be recovered.
        """
        try:
            return parse_model_output(raw_output, DecompositionPayload)
        except InvalidOutputError as e:
            raise GatewayError(str(e)) from e
        except ParsingError as e:
            logger.debug(f"No JSON payload ({e}); trying line-based salvage")
            try:
                return salvage_payload(raw_output)
            except (ParsingError, ValidationError) as salvage_error:
                raise GatewayError(f"Unparseable model output: {salvage_error}") from e

    def build_task_graph(self, query: str, task_id: str, payload: DecompositionPayload) -> TaskGraph:
        subtasks = []
        for index, proposed in enumerate(payload.subtasks, start=1):
            subtask_id = f"{task_id}-subtask-{index}"
            subtasks.append(
                Subtask(
                    id=subtask_id,
                    description=proposed.description,
                    agent_type=_normalize_agent_type(proposed.agent_type, subtask_id),
                    depends_on=[_normalize_dependency(d, task_id) for d in proposed.depends_on],
                )
            )
        return TaskGraph(
            id=task_id,
            original_query=query,
            analysis=payload.analysis,
            subtasks=subtasks,
            status=TaskGraphStatus.PLANNING,
        )
