"""Interfaces of the collaborators the stage pipeline depends on."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from pydantic import BaseModel, Field

from .contracts import ConcurrencyConfig, OutputFormat
from .models import utcnow


class Workflow(BaseModel):
    """Generation recipe referenced by ``FlowConfiguration.workflow_id``."""

    id: str
    name: str = ""
    output_schema: Dict[str, Any] = Field(default_factory=dict)
    structured_data_types: List[str] = Field(default_factory=list)


class GameItem(BaseModel):
    """One work item processed by a flow."""

    id: str
    name: str = ""
    data: Dict[str, Any] = Field(default_factory=dict)


class GeneratedContent(BaseModel):
    item_id: str
    content: Dict[str, Any] = Field(default_factory=dict)
    tokens_used: int = 0
    metadata: Dict[str, Any] = Field(default_factory=dict)


class QualityDetail(BaseModel):
    item_id: str
    score: float
    passed: bool


class QualityReport(BaseModel):
    passed: bool
    average_score: float
    details: List[QualityDetail] = Field(default_factory=list)


class FlowResult(BaseModel):
    """Final output stored for one work item."""

    id: str
    flow_id: str
    workflow_id: str
    item_id: str
    content: Dict[str, Any] = Field(default_factory=dict)
    structured_data: Optional[Dict[str, Any]] = None
    output_format: OutputFormat = OutputFormat.JSON
    quality_score: Optional[float] = None
    created_at: datetime = Field(default_factory=utcnow)


class WorkflowRepository(Protocol):
    async def get(self, workflow_id: str) -> Workflow | None:
        """Return the workflow or ``None`` if unknown."""


class ItemRepository(Protocol):
    async def load(self, ids: List[str]) -> List[GameItem]:
        """Return the work items for ``ids``; unknown ids are omitted."""


class Generator(Protocol):
    async def generate(
        self,
        items: List[GameItem],
        workflow: Workflow,
        concurrency: ConcurrencyConfig,
    ) -> List[GeneratedContent]:
        """Produce content for each item."""


class StructuredDataBuilder(Protocol):
    async def build(
        self, content: GeneratedContent, requested_types: List[str]
    ) -> Optional[Dict[str, Any]]:
        """Build structured data for one content item."""


class QualityGate(Protocol):
    async def evaluate(
        self, content: List[GeneratedContent], threshold: float
    ) -> QualityReport:
        """Score content and decide whether it passes ``threshold``."""


class ResultSink(Protocol):
    async def save(self, result: FlowResult) -> bool:
        """Persist one result and acknowledge it."""


@dataclass
class Collaborators:
    """Bundle of collaborators injected into the default stage executors."""

    workflows: WorkflowRepository
    items: ItemRepository
    generator: Generator
    quality_gate: QualityGate
    sink: ResultSink
    structured_data: Optional[StructuredDataBuilder] = None


class InMemoryWorkflowRepository:
    def __init__(self, workflows: Optional[List[Workflow]] = None) -> None:
        self._workflows = {w.id: w for w in workflows or []}

    def add(self, workflow: Workflow) -> None:
        self._workflows[workflow.id] = workflow

    async def get(self, workflow_id: str) -> Workflow | None:
        return self._workflows.get(workflow_id)


class InMemoryItemRepository:
    def __init__(self, items: Optional[List[GameItem]] = None) -> None:
        self._items = {i.id: i for i in items or []}

    def add(self, item: GameItem) -> None:
        self._items[item.id] = item

    async def load(self, ids: List[str]) -> List[GameItem]:
        return [self._items[i] for i in ids if i in self._items]


class InMemoryResultSink:
    def __init__(self) -> None:
        self.results: List[FlowResult] = []

    async def save(self, result: FlowResult) -> bool:
        self.results.append(result)
        return True


class CompletenessQualityGate:
    """Score content by completeness of its title and description.

    Every item starts at 0.8, gains 0.1 when both ``title`` and
    ``description`` are present and another 0.1 when the description is
    longer than 100 characters.
    """

    async def evaluate(
        self, content: List[GeneratedContent], threshold: float
    ) -> QualityReport:
        details = []
        for item in content:
            score = 0.8
            title = item.content.get("title")
            description = item.content.get("description") or ""
            if title and description:
                score += 0.1
            if len(description) > 100:
                score += 0.1
            score = round(min(score, 1.0), 4)
            details.append(
                QualityDetail(item_id=item.item_id, score=score, passed=score >= threshold)
            )
        average = sum(d.score for d in details) / len(details) if details else 0.0
        return QualityReport(
            passed=bool(details) and average >= threshold,
            average_score=average,
            details=details,
        )
