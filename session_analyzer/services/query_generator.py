"""
Query Generator - natural language to MongoDB aggregation pipelines.

Sends the user's question with a fixed schema/rules preamble to the LLM and
parses the reply as a JSON array of pipeline stages. A second entry point,
fix_query(), shows the LLM its failed pipeline together with the database error
and asks for a full replacement.
"""
import json
import logging
import re
from typing import Any, Dict, List, Optional

from langchain_core.messages import HumanMessage, SystemMessage

from session_analyzer.services.errors import RepairError, TranslationError
from session_analyzer.services.llm import LLMConfig, build_chat_llm, response_text
from session_analyzer.services.runtime import log_event
from session_analyzer.services.temporal import dates_to_iso, normalize_dates

logger = logging.getLogger("query_generator")

WRITE_STAGES = {"$out", "$merge"}

SYSTEM_CONTEXT = """You are a MongoDB query generator for a session rating database.

DATABASE SCHEMA:
Collection: sessions
Structure:
- topicCode: string
- type: string
- domain: string
- class: string
- cohorts: array of strings
- instructor: string
- sessionDate: Date
- ratings.overallAverage: number
- ratings.totalResponses: number
- ratings.studentsAttended: number
- ratings.percentRated: number
- ratings.yesResponses / noResponses / yesPercent / noPercent: number
- metadata.lastSyncedAt: Date
- createdAt, updatedAt: Date

IMPORTANT RULES:
1. Always return ONLY valid MongoDB aggregation pipelines as JSON arrays.
2. Use syntax: [{ "$match": { ... } }, { "$group": { ... } }, ...].
3. For date filtering, always use string format like: "2025-01-01T00:00:00.000Z" (ISO 8601).
   - Do NOT use ISODate(...), new Date(), or { "$date": ... }
   - Just return plain strings. The system converts them to Date objects.
4. For quarters: Q1 = Jan-Mar, Q2 = Apr-Jun, Q3 = Jul-Sep, Q4 = Oct-Dec.
5. Use $year, $month, $dateToString or $dateTrunc for grouping by time.
6. Use case-insensitive regex ("i") where text may vary in casing.
7. Always double-quote all JSON keys and string values.
8. If no valid query can be generated, return: []
9. Do not return markdown, comments, or explanations. ONLY the raw JSON array.
10. Avoid any write operations like $out or $merge.
11. Never include trailing commas at the end of arrays or objects.
12. Return clean, valid JSON. Your output will be parsed with a strict JSON parser.

EXAMPLES:

Query: "Sessions in 2025"
Response: [
  {
    "$match": {
      "sessionDate": {
        "$gte": "2025-01-01T00:00:00.000Z",
        "$lte": "2025-12-31T23:59:59.999Z"
      }
    }
  }
]

Query: "Top 5 instructors in Data Science by average rating in 2025"
Response: [
  {
    "$match": {
      "domain": "Data Science",
      "sessionDate": {
        "$gte": "2025-01-01T00:00:00.000Z",
        "$lte": "2025-12-31T23:59:59.999Z"
      }
    }
  },
  {
    "$group": {
      "_id": "$instructor",
      "avgRating": { "$avg": "$ratings.overallAverage" },
      "totalSessions": { "$sum": 1 }
    }
  },
  { "$sort": { "avgRating": -1 } },
  { "$limit": 5 }
]

Always return ONLY the JSON array."""

GENERATE_PROMPT_TEMPLATE = 'User Query: "{user_query}"\n\nMongoDB Pipeline:'

FIX_PROMPT_TEMPLATE = (
    'The previous MongoDB query failed with error: "{error_message}"\n\n'
    'User Query: "{user_query}"\n'
    "Failed Query: {failed_query}\n\n"
    "Please return a corrected MongoDB pipeline:"
)

TEST_PROMPT = "Test connection. Respond with just: OK"


def _strip_fence(text: str) -> str:
    raw = (text or "").strip()
    raw = re.sub(r"<think>.*?</think>", "", raw, flags=re.DOTALL).strip()
    m = re.search(r"```(?:json)?\s*(.*?)```", raw, flags=re.IGNORECASE | re.DOTALL)
    if m:
        return m.group(1).strip()
    # Unterminated fence: drop the opening marker only.
    return re.sub(r"^```(?:json)?\s*", "", raw, flags=re.IGNORECASE).strip()


def parse_pipeline(text: str) -> List[Dict[str, Any]]:
    """Parse an LLM reply into a list of stage dicts.

    Raises ValueError when the reply is empty, is not valid JSON, is not an
    array of objects, or contains a write stage.
    """
    cleaned = _strip_fence(text)
    if not cleaned:
        raise ValueError("Empty response from LLM")
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Response is not valid JSON: {exc}") from exc
    if not isinstance(parsed, list):
        raise ValueError("Query must be an array")
    for index, stage in enumerate(parsed):
        if not isinstance(stage, dict):
            raise ValueError(f"Stage {index} is not an object")
        blocked = WRITE_STAGES.intersection(stage.keys())
        if blocked:
            raise ValueError(f"Stage {index} uses write operator {sorted(blocked)[0]}")
    return parsed


class QueryGenerator:
    def __init__(self, llm=None, config: Optional[LLMConfig] = None):
        self.llm = llm
        self.config = config
        self.context: Optional[str] = None
        self.is_initialized = False

    @property
    def model_name(self) -> str:
        if self.config is not None:
            return self.config.model
        return str(getattr(self.llm, "model_name", "") or "")

    def initialize(self) -> None:
        if self.is_initialized:
            return
        if self.llm is None:
            self.config = self.config or LLMConfig.from_env()
            self.llm = build_chat_llm(self.config)
        self.context = SYSTEM_CONTEXT
        self.is_initialized = True
        log_event(logger, logging.INFO, "query_generator_initialized", model=self.model_name)

    def _ask(self, prompt: str) -> str:
        messages = [SystemMessage(content=self.context), HumanMessage(content=prompt)]
        return response_text(self.llm.invoke(messages))

    def generate_query(self, user_query: str) -> List[Dict[str, Any]]:
        if not self.is_initialized:
            raise TranslationError("Query Generator not initialized", user_query=user_query)
        try:
            raw = self._ask(GENERATE_PROMPT_TEMPLATE.format(user_query=user_query))
            pipeline = normalize_dates(parse_pipeline(raw))
        except Exception as exc:
            log_event(logger, logging.ERROR, "query_generation_failed", user_query=user_query, error=str(exc))
            raise TranslationError(f"Failed to generate MongoDB query: {exc}", user_query=user_query) from exc
        log_event(logger, logging.INFO, "query_generated", stages=len(pipeline), pipeline=dates_to_iso(pipeline))
        return pipeline

    def fix_query(
        self,
        original_query: str,
        error_message: str,
        failed_query: List[Dict[str, Any]],
    ) -> List[Dict[str, Any]]:
        if not self.is_initialized:
            raise RepairError(
                "Query Generator not initialized",
                user_query=original_query,
                error_message=error_message,
                failed_query=failed_query,
            )
        try:
            prompt = FIX_PROMPT_TEMPLATE.format(
                error_message=error_message,
                user_query=original_query,
                failed_query=json.dumps(dates_to_iso(failed_query), default=str),
            )
            pipeline = normalize_dates(parse_pipeline(self._ask(prompt)))
        except Exception as exc:
            log_event(logger, logging.ERROR, "query_fix_failed", user_query=original_query, error=str(exc))
            raise RepairError(
                f"Failed to fix query: {exc}",
                user_query=original_query,
                error_message=error_message,
                failed_query=failed_query,
            ) from exc
        log_event(logger, logging.INFO, "query_fixed", stages=len(pipeline), pipeline=dates_to_iso(pipeline))
        return pipeline

    def test_connection(self) -> bool:
        if self.llm is None:
            return False
        try:
            reply = response_text(self.llm.invoke([HumanMessage(content=TEST_PROMPT)]))
            return "OK" in reply
        except Exception:
            logger.warning("LLM connection test failed", exc_info=True)
            return False
