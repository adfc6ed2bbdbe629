"""Task router: intent recognition plus decomposition and execution.

route_task() tags a query with an intent, decomposes it through the
gateway and, when given a run key, attaches the TaskGraph to that run's
ExecutionState. execute_task() hands the graph to the subtask executor.
"""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass, field

from flowcore.core.decomposition import TaskDecompositionGateway
from flowcore.core.executor import SubtaskExecutor
from flowcore.core.graph_engine import WorkflowExecutionEngine
from flowcore.core.models import AgentType, TaskExecutionResult, TaskGraph

logger = logging.getLogger(__name__)

GENERAL_INTENT_ID = "general_query"
MIN_CONFIDENCE = 0.3


@dataclass
class IntentPattern:
    """A recognizable intent. ``pattern`` is a case-insensitive regular expression."""

    id: str
    pattern: str
    examples: list[str] = field(default_factory=list)
    workflow_id: str | None = None
    priority: float = 1.0

    def __post_init__(self):
        self._compiled = re.compile(self.pattern, re.IGNORECASE)

    def score(self, query: str, workflow_id: str | None = None) -> float:
        score = 0.9 if self._compiled.search(query) else 0.0
        if any(query.strip().lower() == example.lower() for example in self.examples):
            score = 1.0
        score *= 1 + self.priority * 0.1
        if workflow_id is not None and self.workflow_id == workflow_id:
            score *= 1.5
        return score


@dataclass
class TaskIntent:
    id: str
    confidence: float
    description: str = ""


DEFAULT_INTENTS = (
    IntentPattern(
        id="research_intent",
        pattern=r"(research|find information|learn about|gather data on)",
        examples=[
            "Research the market trends for electric vehicles",
            "Find information about climate change impacts",
            "I need to learn about quantum computing",
        ],
    ),
    IntentPattern(
        id="lead_generation_intent",
        pattern=r"(find leads|generate leads|identify prospects|potential customers)",
        examples=[
            "Find leads for software companies in California",
            "Generate a list of potential customers",
        ],
    ),
    IntentPattern(
        id="content_creation_intent",
        pattern=r"(create content|write|draft|compose)",
        examples=["Write a blog post about AI trends", "Draft an email for my newsletter"],
    ),
    IntentPattern(
        id=GENERAL_INTENT_ID,
        pattern=r"(what|how|why|who|when|where|can you|tell me|explain|define|help)",
        examples=["What is machine learning?", "Explain the theory of relativity"],
        # Lower priority so specialized intents take precedence
        priority=0.5,
    ),
)


class TaskRouter:
    """Route free-text queries into executable task graphs."""

    def __init__(
        self,
        gateway: TaskDecompositionGateway,
        executor: SubtaskExecutor,
        engine: WorkflowExecutionEngine | None = None,
        max_subtasks: int | None = None,
        register_defaults: bool = True,
    ):
        self.gateway = gateway
        self.executor = executor
        self.engine = engine
        self.max_subtasks = max_subtasks
        self._lock = threading.RLock()
        self._intents: dict[str, IntentPattern] = {}
        if register_defaults:
            for intent in DEFAULT_INTENTS:
                self.register_intent(intent)

    # --- Intents ---

    def register_intent(self, intent: IntentPattern) -> None:
        with self._lock:
            self._intents[intent.id] = intent

    def unregister_intent(self, intent_id: str) -> bool:
        with self._lock:
            return self._intents.pop(intent_id, None) is not None

    def get_registered_intents(self) -> list[IntentPattern]:
        with self._lock:
            return list(self._intents.values())

    def recognize_intent(self, query: str, workflow_id: str | None = None) -> TaskIntent:
        best: IntentPattern | None = None
        best_score = 0.0
        for intent in self.get_registered_intents():
            score = intent.score(query, workflow_id)
            if intent.id == GENERAL_INTENT_ID:
                score = max(score, MIN_CONFIDENCE)
            if score > best_score:
                best, best_score = intent, score

        if best is not None and best_score > MIN_CONFIDENCE:
            return TaskIntent(id=best.id, confidence=best_score, description=f"Recognized intent: {best.id}")
        return TaskIntent(
            id=GENERAL_INTENT_ID,
            confidence=MIN_CONFIDENCE,
            description="General query without specific recognized intent",
        )

    # --- Routing ---

    def _cap_subtasks(self, task_graph: TaskGraph) -> None:
        if self.max_subtasks is None or len(task_graph.subtasks) <= self.max_subtasks:
            return
        subtasks = task_graph.subtasks
        # A trailing compilation step survives the cap in place of the last regular subtask
        if subtasks[-1].agent_type == AgentType.COMPILATION and self.max_subtasks > 1:
            kept_subtasks = subtasks[: self.max_subtasks - 1] + [subtasks[-1]]
        else:
            kept_subtasks = subtasks[: self.max_subtasks]
        kept_ids = {s.id for s in kept_subtasks}
        dropped = [s.id for s in subtasks if s.id not in kept_ids]
        logger.warning(f"Task {task_graph.id}: dropping subtasks beyond limit {self.max_subtasks}: {dropped}")
        task_graph.subtasks = kept_subtasks
        for subtask in task_graph.subtasks:
            subtask.depends_on = [d for d in subtask.depends_on if d in kept_ids]

    async def route_task(
        self,
        query: str,
        workflow_id: str | None = None,
        session_id: str | None = None,
    ) -> TaskGraph:
        """Decompose ``query`` and optionally attach it to a workflow run."""
        intent = self.recognize_intent(query, workflow_id)
        task_graph = await self.gateway.analyze_query(query)
        task_graph.intent = intent.id
        self._cap_subtasks(task_graph)
        logger.info(
            f"Routed query to task {task_graph.id} (intent {intent.id}, "
            f"{len(task_graph.subtasks)} subtasks)"
        )

        if workflow_id is not None and session_id is not None:
            if self.engine is None:
                raise ValueError("An engine is required to attach tasks to a workflow run")
            await self.engine.add_task(workflow_id, session_id, task_graph)
        return task_graph

    async def execute_task(
        self,
        task_graph: TaskGraph,
        workflow_id: str | None = None,
        session_id: str | None = None,
    ) -> TaskExecutionResult:
        """Execute every subtask. With a run key, the finished graph replaces the attached copy."""
        result = await self.executor.execute_task(task_graph)
        if workflow_id is not None and session_id is not None and self.engine is not None:
            await self.engine.add_task(workflow_id, session_id, task_graph)
        return result
