"""Plain-language summaries of query results."""
import json
import logging
from typing import Any, Dict, List, Optional

from langchain_core.messages import HumanMessage
from langchain_core.prompts import ChatPromptTemplate

from session_analyzer.services.errors import AnalysisError
from session_analyzer.services.llm import LLMConfig, build_chat_llm, response_text
from session_analyzer.services.runtime import log_event

logger = logging.getLogger("result_analyzer")

MAX_ROWS_IN_PROMPT = 15

ANALYSIS_TEMPLATE = ChatPromptTemplate.from_messages(
    [
        (
            "system",
            "You are a data analyst for a teaching-session rating database. "
            "Sessions have an instructor, domain, class, cohorts, a sessionDate and "
            "ratings (overallAverage, totalResponses, studentsAttended, percentRated).",
        ),
        (
            "human",
            """Answer the user's question using the query results below.

Question: {question}

Total records: {record_count}
Query Results (first {shown_count}):
{results}

Instructions:
- Give a direct, specific answer using the ACTUAL numbers from the results.
- Mention the top 3-5 entries by name and their values if it's a ranking query.
- If it's a total/summary, state the exact figure.
- Keep it concise (2-4 sentences). No query syntax, no technical jargon.

Answer:""",
        ),
    ]
)


class ResultAnalyzer:
    def __init__(self, llm=None, config: Optional[LLMConfig] = None):
        self.llm = llm
        self.config = config
        self.is_initialized = False

    def initialize(self) -> None:
        if self.is_initialized:
            return
        if self.llm is None:
            self.config = self.config or LLMConfig.from_env()
            self.llm = build_chat_llm(self.config)
        self.is_initialized = True
        log_event(logger, logging.INFO, "result_analyzer_initialized")

    def analyze_results(self, question: str, results: List[Dict[str, Any]]) -> str:
        if not self.is_initialized:
            raise AnalysisError("Result Analyzer not initialized")
        if results:
            shown = results[:MAX_ROWS_IN_PROMPT]
            results_str = json.dumps(shown, default=str, indent=2)
        else:
            shown = []
            results_str = "No results found."
        messages = ANALYSIS_TEMPLATE.format_messages(
            question=question,
            record_count=len(results or []),
            shown_count=len(shown),
            results=results_str,
        )
        try:
            answer = response_text(self.llm.invoke(messages))
        except Exception as exc:
            log_event(logger, logging.ERROR, "result_analysis_failed", error=str(exc))
            raise AnalysisError(f"Failed to analyze results: {exc}") from exc
        return answer or "No summary available."

    def test_connection(self) -> bool:
        if self.llm is None:
            return False
        try:
            reply = response_text(self.llm.invoke([HumanMessage(content="Test connection. Respond with just: OK")]))
            return "OK" in reply
        except Exception:
            logger.warning("Result analyzer connection test failed", exc_info=True)
            return False
