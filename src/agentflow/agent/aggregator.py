"""Merges the answers of several subqueries into the final reply."""

import logging
from typing import (
    AsyncIterator,
    List,
    Optional,
    Sequence,
)

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
)

from agentflow.agent.model_interface import ModelHub
from agentflow.common import extract_json
from agentflow.core import events
from agentflow.core.events import StreamEvent
from agentflow.core.schema import (
    FulfillmentResult,
    ModelOptions,
)

logger = logging.getLogger(__name__)

DECISION_SYSTEM_PROMPT = """You are an assistant that determines whether multiple task responses need to be aggregated into a unified response.

Analyze the original query and the responses from each task.

**Return JSON only:**
{
  "needsAggregation": boolean,
  "reason": string  // Write the reason in the same language as the original query
}

**Set needsAggregation to FALSE when:**
- The last response already synthesizes/summarizes all previous results
- The last task explicitly asks for a "report" or "summary" based on previous tasks
- The last response comprehensively addresses the original query by incorporating previous results

**Set needsAggregation to TRUE when:**
- Each response is independent and doesn't reference other results
- The original query asks for multiple distinct things that weren't combined
- Important information from earlier responses is missing in the final response

Examples:

Query: "Do A, do B, and write a report based on them"
-> needsAggregation: false (last task already creates a combined report)

Query: "Do A, and B too"
-> needsAggregation: true (independent tasks, need combination)

Query: "Tell me the weather and check my schedule"
-> needsAggregation: true (independent queries, results should be combined)"""

GENERATION_SYSTEM_PROMPT = """You are an assistant that combines multiple task responses into a single, coherent response.

Guidelines:
- Preserve all important information from each response
- Remove redundancy: information repeated across responses appears only once
- Create a natural, flowing response that addresses the original query
- Don't use section headers like "[Task 1]" - integrate smoothly
- If responses have related information, synthesize them logically
- Keep the tone consistent with the original responses
- Be concise - don't add unnecessary filler
- Respond in the same language as the original query

Rules:
- Do NOT make up new information beyond what's provided in the task responses
- Do NOT call tools or perform additional actions - only synthesize what you already have"""

DEFAULT_DESCRIPTION = "Combining the results of several tasks into one response."


class AggregateDecision(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    needs_aggregation: Optional[bool] = Field(default=True, alias="needsAggregation")
    reason: Optional[str] = ""


def _results_text(results: Sequence[FulfillmentResult]) -> str:
    return "\n\n---\n\n".join(
        f"[Task {i}] {r.subquery}\n[Response {i}] {r.response}" for i, r in enumerate(results, 1)
    )


class ResultAggregator:
    """
    Produces the final ``text_chunk`` events for a multi-subquery answer.

    ``needs_aggregation`` is normally decided at routing time.  ``None`` selects the older path
    where the model is asked to decide from the results themselves.
    """

    def __init__(self, models: ModelHub, agent_name: str = "agentflow"):
        self.models = models
        self.agent_name = agent_name

    async def aggregate(
        self,
        original_query: str,
        results: Sequence[FulfillmentResult],
        needs_aggregation: bool | None = None,
    ) -> AsyncIterator[StreamEvent]:
        if len(results) <= 1:
            response = results[0].response if results else ""
            if response:
                yield events.text_chunk(response)
            return

        description = DEFAULT_DESCRIPTION
        if needs_aggregation is None:
            decision = await self.decide(original_query, results)
            logger.info(
                "Aggregate decision: needs_aggregation=%s reason=%s",
                decision.needs_aggregation,
                decision.reason,
            )
            needs_aggregation = decision.needs_aggregation is not False
            description = decision.reason or DEFAULT_DESCRIPTION

        if not needs_aggregation:
            yield events.text_chunk(results[-1].response)
            return

        yield events.thinking_process(f"[{self.agent_name}] Merging responses", description)
        async for event in self._generate(original_query, results):
            yield event

    async def decide(
        self, original_query: str, results: Sequence[FulfillmentResult]
    ) -> AggregateDecision:
        """Ask the model whether *results* need merging; any failure means yes."""
        model = self.models.get()
        prompt = f"Original Query: {original_query}\n\nResults:\n{_results_text(results)}"
        messages = model.generate_messages(query=prompt, system_prompt=DECISION_SYSTEM_PROMPT)
        try:
            response = await model.fetch(messages, ModelOptions(json_mode=True))
            return AggregateDecision.model_validate_json(extract_json(response.content or ""))
        except Exception:  # pylint: disable=broad-except
            logger.warning("Failed to parse aggregate decision, defaulting to aggregate", exc_info=True)
            return AggregateDecision(needs_aggregation=True, reason="")

    async def _generate(
        self, original_query: str, results: Sequence[FulfillmentResult]
    ) -> AsyncIterator[StreamEvent]:
        model = self.models.get()
        prompt = (
            f"Original Query: {original_query}\n\n"
            f"All task results:\n{_results_text(results)}\n\n"
            "Please provide a unified response that addresses the original query."
        )
        messages = model.generate_messages(query=prompt, system_prompt=GENERATION_SYSTEM_PROMPT)
        chunks: List[str] = []
        async for chunk in model.fetch_stream_with_context_message(messages, []):
            if chunk.delta.content:
                chunks.append(chunk.delta.content)
                yield events.text_chunk(chunk.delta.content)
        logger.debug("Aggregated response: %d chars", sum(len(c) for c in chunks))
