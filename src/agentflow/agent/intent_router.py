"""
Intent routing: map a raw query and its thread history onto the intent catalog.

Two modes share one output contract (:class:`~agentflow.core.schema.IntentTriggerResult`):

* **multi** decomposes the query into action-based subqueries, matches each to a catalog entry
  and decides whether the answers must be merged afterwards;
* **single** keeps the whole query and only picks the best matching intent.

Routing is an optimisation.  Whatever goes wrong (no catalog, model error, unparsable answer) the
router degrades to the whole query as one unmatched subquery.
"""

import logging
from typing import (
    List,
    Optional,
)

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
)

from agentflow.agent.model_interface import ModelHub
from agentflow.common import (
    extract_json,
    today_line,
)
from agentflow.core.schema import (
    Intent,
    IntentTriggerResult,
    MessageRole,
    ModelOptions,
    Thread,
    TriggeredIntent,
)
from agentflow.memory.memory_store import IntentMemory

logger = logging.getLogger(__name__)

_SPEAKERS = {
    MessageRole.USER: "User",
    MessageRole.MODEL: "Assistant",
    MessageRole.SYSTEM: "System",
}


def serialize_thread(thread: Thread | None) -> str:
    """Render the thread as ``Speaker: \"\"\"text\"\"\"`` lines in timestamp order."""
    if thread is None:
        return ""
    return "\n".join(
        f'{_SPEAKERS[message.role]}: """{message.text}"""' for message in thread.ordered_messages()
    )


# ---------------------------------------------------------------------------
# Model answers
# ---------------------------------------------------------------------------
class _Subquery(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    subquery: Optional[str] = None
    intent_name: Optional[str] = Field(default=None, alias="intentName")
    action_plan: Optional[str] = Field(default=None, alias="actionPlan")


class _MultiAnswer(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    needs_aggregation: Optional[bool] = Field(default=None, alias="needsAggregation")
    subqueries: List[_Subquery] = Field(default_factory=list)


class _SingleAnswer(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    intent_name: Optional[str] = Field(default=None, alias="intentName")
    action_plan: Optional[str] = Field(default=None, alias="actionPlan")


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------
def _system_prompt(intents: List[Intent]) -> str:
    intent_list = "\n".join(f"- {intent.name}: {intent.description}" for intent in intents)
    return f"""{today_line()}
You are an expert in accurately identifying user intentions.

Available intent list:
{intent_list}

Please select and answer only from the above intent list."""


def _history_block(thread: Thread | None) -> str:
    history = serialize_thread(thread)
    if not history:
        return ""
    return f"The following is the conversation history with the user: {history}\n\n"


MULTI_INSTRUCTIONS = """Based on the above conversation history, analyze the last user question and identify all relevant intents.

Instructions:
1. First, decompose the last user question into action-based subqueries (each representing a distinct action or task)
2. Then, map each subquery to its corresponding intent from the available intent list
3. For each subquery, provide a 2-3 sentence summary of what actions will be performed
4. Multiple intents can be identified if the question covers various topics or actions
5. Maintain the logical sequence of the original question when splitting into subqueries
6. **Important**: If the query cannot be split into multiple subqueries (i.e., it represents a single action or request), treat the entire query as one subquery and still follow the output format
7. Determine if the final response needs aggregation:
   - Set needsAggregation to TRUE if: multiple subqueries exist AND their results should be combined into a unified response
   - Set needsAggregation to FALSE if: only one subquery exists, OR multiple subqueries are independent and can be answered separately without combining

Output Format:
You MUST return the output in the following JSON format. Do not include any other text before or after the JSON:
{
  "needsAggregation": <true or false>,
  "subqueries": [
    {
      "subquery": "<subquery_1>",
      "intentName": "<intent_name_1>",
      "actionPlan": "<2-3 sentence description of what will be done for this subquery>"
    }
  ]
}

Requirements:
- Each subquery should represent a single, actionable task or request
- Preserve the original meaning and context when splitting queries
- Select only from the provided intent list
- DO NOT set intentName for any subquery that doesn't match available intents.
- Even if the query is simple and cannot be decomposed, return it as a single-element array with one subquery object
- Set needsAggregation based on whether the user expects a unified combined answer or separate responses"""

SINGLE_INSTRUCTIONS = """Based on the above conversation history, analyze the user question and identify the most relevant intent.

Instructions:
1. Select the single most appropriate intent from the available intent list
2. If no intent matches well, do not set intentName
3. Provide a 2-3 sentence action plan describing what will be done

Output Format:
You MUST return the output in the following JSON format. Do not include any other text before or after the JSON:
{
  "intentName": "<intent_name or null>",
  "actionPlan": "<2-3 sentence description of what will be done>"
}"""


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------
class IntentRouter:
    """Turns a query into an ordered list of subqueries to fulfill."""

    def __init__(
        self,
        models: ModelHub,
        intent_memory: IntentMemory | None = None,
        multi_intent: bool = True,
    ):
        self.models = models
        self.intent_memory = intent_memory
        self.multi_intent = multi_intent

    async def route(self, query: str, thread: Thread | None = None) -> IntentTriggerResult:
        """Route *query*; never raises for model or catalog problems."""
        if self.intent_memory is None:
            return IntentTriggerResult.passthrough(query)
        try:
            catalog = await self.intent_memory.list_intents()
        except Exception:  # pylint: disable=broad-except
            logger.exception("Failed to load intent catalog")
            return IntentTriggerResult.passthrough(query)
        if not catalog:
            logger.warning("No intent found")
            return IntentTriggerResult.passthrough(query)

        if self.multi_intent:
            result = await self._route_multi(query, thread, catalog)
        else:
            result = await self._route_single(query, thread, catalog)
        logger.info(
            "Intent routing result: %d subquer%s, needs_aggregation=%s",
            len(result.intents),
            "y" if len(result.intents) == 1 else "ies",
            result.needs_aggregation,
        )
        return result

    async def _ask(self, system_prompt: str, user_message: str) -> str | None:
        model = self.models.get()
        messages = model.generate_messages(query=user_message, system_prompt=system_prompt)
        try:
            response = await model.fetch(messages, ModelOptions(json_mode=True))
        except Exception:  # pylint: disable=broad-except
            logger.exception("Intent routing call failed")
            return None
        if not response.content:
            logger.warning("Cannot extract intent from query")
            return None
        return extract_json(response.content)

    @staticmethod
    def _lookup(catalog: List[Intent], name: str | None) -> Intent | None:
        if not name:
            return None
        for intent in catalog:
            if intent.name == name:
                return intent
        logger.info("Model named unknown intent %r, leaving subquery unmatched", name)
        return None

    async def _route_multi(
        self, query: str, thread: Thread | None, catalog: List[Intent]
    ) -> IntentTriggerResult:
        user_message = f'{_history_block(thread)}Last user question: "{query}"\n\n{MULTI_INSTRUCTIONS}'
        content = await self._ask(_system_prompt(catalog), user_message)
        if content is None:
            return IntentTriggerResult.passthrough(query)
        try:
            answer = _MultiAnswer.model_validate_json(content)
        except ValidationError:
            logger.warning("Unparsable routing answer: %s", content)
            return IntentTriggerResult.passthrough(query)

        triggered = [
            TriggeredIntent(
                subquery=item.subquery,
                intent=self._lookup(catalog, item.intent_name),
                action_plan=item.action_plan,
            )
            for item in answer.subqueries
            if item.subquery
        ]
        if not triggered:
            return IntentTriggerResult.passthrough(query)
        return IntentTriggerResult(intents=triggered, needs_aggregation=bool(answer.needs_aggregation))

    async def _route_single(
        self, query: str, thread: Thread | None, catalog: List[Intent]
    ) -> IntentTriggerResult:
        user_message = f'{_history_block(thread)}User question: "{query}"\n\n{SINGLE_INSTRUCTIONS}'
        content = await self._ask(_system_prompt(catalog), user_message)
        if content is None:
            return IntentTriggerResult.passthrough(query)
        try:
            answer = _SingleAnswer.model_validate_json(content)
        except ValidationError:
            logger.warning("Unparsable routing answer: %s", content)
            return IntentTriggerResult.passthrough(query)
        return IntentTriggerResult(
            intents=[
                TriggeredIntent(
                    subquery=query,
                    intent=self._lookup(catalog, answer.intent_name),
                    action_plan=answer.action_plan,
                )
            ]
        )
