"""Default executors for the generation pipeline stages."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from .collaborators import (
    Collaborators,
    FlowResult,
    GameItem,
    GeneratedContent,
    QualityReport,
    Workflow,
)
from .errors import FlowTimeoutError, StageExecutionError
from .runner import StageContext, StageExecutor

logger = logging.getLogger(__name__)


class GenerationStages:
    """Bind each pipeline stage to the injected collaborators.

    Outputs are returned as JSON-compatible values so they can be stored in
    checkpoints and replayed after recovery.
    """

    def __init__(self, collaborators: Collaborators) -> None:
        self._c = collaborators

    def executors(self) -> Dict[str, StageExecutor]:
        return {
            "preparing": self.prepare,
            "data_loading": self.load_data,
            "format_analysis": self.analyze_format,
            "content_generation": self.generate_content,
            "format_correction": self.correct_format,
            "structured_data_generation": self.build_structured_data,
            "quality_validation": self.validate_quality,
            "result_storage": self.store_results,
        }

    # ------------------------------------------------------------------
    # Helpers reading earlier stage outputs
    @staticmethod
    def _workflow(ctx: StageContext) -> Workflow:
        return Workflow.model_validate(ctx.output("preparing"))

    @staticmethod
    def _items(ctx: StageContext) -> List[GameItem]:
        return [GameItem.model_validate(i) for i in ctx.output("data_loading", [])]

    @staticmethod
    def _contents(ctx: StageContext) -> List[GeneratedContent]:
        raw = ctx.output("format_correction") or ctx.output("content_generation", [])
        return [GeneratedContent.model_validate(c) for c in raw]

    # ------------------------------------------------------------------
    async def prepare(self, ctx: StageContext) -> Dict[str, Any]:
        workflow_id = ctx.config.workflow_id
        workflow = await self._c.workflows.get(workflow_id)
        if workflow is None:
            raise StageExecutionError(
                f"Workflow not found: {workflow_id}", stage=ctx.stage, retryable=False
            )
        logger.info(
            f"Validated workflow {workflow_id} with {len(ctx.config.game_data_ids)} items"
        )
        return workflow.model_dump(mode="json")

    async def load_data(self, ctx: StageContext) -> List[Dict[str, Any]]:
        requested = ctx.config.game_data_ids
        items = await self._c.items.load(list(requested))
        if not items:
            raise StageExecutionError("No valid game data found", stage=ctx.stage)
        found = {item.id for item in items}
        for item_id in requested:
            if item_id not in found:
                await ctx.record_item(item_id, False, "item not found")
        return [item.model_dump(mode="json") for item in items]

    async def analyze_format(self, ctx: StageContext) -> Dict[str, Any]:
        workflow = self._workflow(ctx)
        return {
            "format": ctx.config.output_format.value,
            "required_fields": sorted(workflow.output_schema),
        }

    async def generate_content(self, ctx: StageContext) -> List[Dict[str, Any]]:
        workflow = self._workflow(ctx)
        items = self._items(ctx)
        if not items:
            raise StageExecutionError("No items to generate content for", stage=ctx.stage)
        missing = len(ctx.config.game_data_ids) - len(items)
        await ctx.reset_items(failed=max(0, missing))

        limit = max(1, ctx.config.concurrency.max_concurrent_games)
        per_item = ctx.config.timeout.per_game / 1000
        semaphore = asyncio.Semaphore(limit)
        done = 0

        async def generate_one(item: GameItem) -> Optional[GeneratedContent]:
            nonlocal done
            async with semaphore:
                if ctx.cancelled:
                    return None
                try:
                    produced = await asyncio.wait_for(
                        self._c.generator.generate(
                            [item], workflow, ctx.config.concurrency
                        ),
                        per_item,
                    )
                except asyncio.TimeoutError:
                    error: Exception = FlowTimeoutError(
                        f"Item {item.id} timed out after {ctx.config.timeout.per_game:.0f}ms",
                        item_id=item.id,
                    )
                    produced = None
                except Exception as e:
                    error = e
                    produced = None
                await ctx.add_usage(
                    tokens=sum(c.tokens_used for c in produced or []), api_calls=1
                )
                done += 1
                if produced:
                    await ctx.record_item(item.id, True)
                    result = produced[0]
                else:
                    if produced is not None:
                        error = StageExecutionError(f"No content generated for {item.id}")
                    await ctx.record_item(item.id, False, str(error))
                    result = None
                await ctx.report_progress(done / len(items), f"Generated {done}/{len(items)}")
                return result

        results = await asyncio.gather(*(generate_one(item) for item in items))
        ctx.raise_if_cancelled()
        contents = [c for c in results if c is not None]
        if not contents:
            raise StageExecutionError(
                f"All {len(items)} items failed content generation", stage=ctx.stage
            )
        return [c.model_dump(mode="json") for c in contents]

    async def correct_format(self, ctx: StageContext) -> List[Dict[str, Any]]:
        required = ctx.output("format_analysis", {}).get("required_fields", [])
        corrected = []
        for content in self._contents(ctx):
            missing = [field for field in required if field not in content.content]
            if missing:
                logger.warning(
                    f"Content for {content.item_id} is missing fields {missing} "
                    f"in flow {ctx.flow_id}"
                )
            content.metadata["missing_fields"] = missing
            corrected.append(content.model_dump(mode="json"))
        return corrected

    async def build_structured_data(
        self, ctx: StageContext
    ) -> List[Optional[Dict[str, Any]]]:
        contents = self._contents(ctx)
        builder = self._c.structured_data
        if builder is None:
            logger.warning(f"No structured data builder configured for flow {ctx.flow_id}")
            return [None] * len(contents)
        requested = self._workflow(ctx).structured_data_types
        results: List[Optional[Dict[str, Any]]] = []
        for content in contents:
            ctx.raise_if_cancelled()
            try:
                results.append(await builder.build(content, requested))
            except Exception as e:
                logger.warning(
                    f"Structured data failed for {content.item_id} in flow {ctx.flow_id}: {e}"
                )
                results.append(None)
        return results

    async def validate_quality(self, ctx: StageContext) -> Dict[str, Any]:
        threshold = ctx.config.quality_threshold
        report = await self._c.quality_gate.evaluate(self._contents(ctx), threshold)
        if not report.passed:
            raise StageExecutionError(
                f"Average quality {report.average_score:.2f} below threshold {threshold:.2f}",
                stage=ctx.stage,
                error_type="quality-check",
            )
        return report.model_dump(mode="json")

    async def store_results(self, ctx: StageContext) -> Dict[str, Any]:
        contents = self._contents(ctx)
        structured = ctx.output("structured_data_generation", [])
        quality = ctx.output("quality_validation")
        scores = {}
        if quality is not None:
            report = QualityReport.model_validate(quality)
            scores = {d.item_id: d.score for d in report.details}

        stored = []
        for index, content in enumerate(contents):
            result = FlowResult(
                id=f"{ctx.flow_id}_result_{index}",
                flow_id=ctx.flow_id,
                workflow_id=ctx.config.workflow_id,
                item_id=content.item_id,
                content=content.content,
                structured_data=structured[index] if index < len(structured) else None,
                output_format=ctx.config.output_format,
                quality_score=scores.get(content.item_id),
            )
            if not await self._c.sink.save(result):
                raise StageExecutionError(
                    f"Result sink rejected {result.id}", stage=ctx.stage
                )
            stored.append(result.id)
        logger.info(f"Stored {len(stored)} generation results for flow {ctx.flow_id}")
        return {"stored": len(stored), "result_ids": stored}
