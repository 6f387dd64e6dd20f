import json
from datetime import datetime, timezone

import pytest

from session_analyzer.services.errors import RepairError, TranslationError
from session_analyzer.services.query_generator import QueryGenerator, parse_pipeline


class _DummyLLM:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def invoke(self, messages):
        self.calls.append(messages)
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item

        class _Resp:
            def __init__(self, content: str):
                self.content = content

        return _Resp(item)


def _generator(*responses) -> QueryGenerator:
    gen = QueryGenerator(llm=_DummyLLM(*responses))
    gen.initialize()
    return gen


def test_fenced_json_is_parsed():
    gen = _generator('```json\n[{"$match":{}}]\n```')
    assert gen.generate_query("all sessions") == [{"$match": {}}]


def test_plain_fence_and_think_block_are_stripped():
    assert parse_pipeline('<think>hmm</think>\n```\n[{"$limit": 5}]\n```') == [{"$limit": 5}]


def test_empty_array_is_a_valid_result():
    assert _generator("[]").generate_query("something unanswerable") == []


def test_generated_dates_are_normalized():
    gen = _generator('[{"$match": {"sessionDate": {"$gte": "2025-01-01T00:00:00.000Z"}}}]')
    pipeline = gen.generate_query("Sessions in 2025")
    assert pipeline[0]["$match"]["sessionDate"]["$gte"] == datetime(2025, 1, 1, tzinfo=timezone.utc)


def test_prompt_carries_preamble_and_question():
    gen = _generator("[]")
    gen.generate_query("Top 5 instructors by average rating in 2025")

    system, human = gen.llm.calls[0]
    assert "MongoDB query generator" in system.content
    assert "Top 5 instructors by average rating in 2025" in human.content


@pytest.mark.parametrize(
    "reply",
    ["not json at all", '{"$match": {}}', "", '[{"$match": {}}, 3]', '[{"$out": "copy"}]'],
)
def test_bad_replies_raise_translation_error(reply):
    gen = _generator(reply)
    with pytest.raises(TranslationError) as exc_info:
        gen.generate_query("q")
    assert exc_info.value.user_query == "q"


def test_llm_failure_raises_translation_error():
    gen = _generator(RuntimeError("Error code: 429 - rate limit"))
    with pytest.raises(TranslationError, match="429"):
        gen.generate_query("q")


def test_generate_requires_initialization():
    gen = QueryGenerator(llm=_DummyLLM("[]"))
    with pytest.raises(TranslationError, match="not initialized"):
        gen.generate_query("q")
    assert gen.llm.calls == []


def test_fix_query_includes_error_and_failed_pipeline():
    gen = _generator('[{"$group": {"_id": "$instructor"}}]')
    failed = [{"$match": {"sessionDate": {"$gte": datetime(2025, 1, 1, tzinfo=timezone.utc)}}}, {"$grup": {}}]

    fixed = gen.fix_query("top instructors", "Unrecognized pipeline stage name: '$grup'", failed)

    assert fixed == [{"$group": {"_id": "$instructor"}}]
    prompt = gen.llm.calls[0][1].content
    assert "Unrecognized pipeline stage name" in prompt
    assert "top instructors" in prompt
    assert json.dumps("2025-01-01T00:00:00.000Z") in prompt
    assert "$grup" in prompt


def test_fix_query_bad_reply_raises_repair_error():
    gen = _generator("Sorry, I cannot help with that.")
    failed = [{"$match": {}}]
    with pytest.raises(RepairError) as exc_info:
        gen.fix_query("q", "boom", failed)
    assert exc_info.value.error_message == "boom"
    assert exc_info.value.failed_query == failed


def test_fix_query_non_array_raises_repair_error():
    with pytest.raises(RepairError):
        _generator('{"$match": {}}').fix_query("q", "boom", [])


def test_test_connection():
    assert _generator("OK").test_connection() is True
    assert _generator("nope").test_connection() is False
    assert _generator(ConnectionError("down")).test_connection() is False
