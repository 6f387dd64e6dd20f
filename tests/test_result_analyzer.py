import pytest

from session_analyzer.services.errors import AnalysisError
from session_analyzer.services.result_analyzer import ResultAnalyzer


class _DummyLLM:
    def __init__(self, response_text):
        self.response_text = response_text
        self.prompts = []

    def invoke(self, messages):
        self.prompts.append(messages)
        if isinstance(self.response_text, Exception):
            raise self.response_text

        class _Resp:
            def __init__(self, content: str):
                self.content = content

        return _Resp(self.response_text)


def _analyzer(reply):
    analyzer = ResultAnalyzer(llm=_DummyLLM(reply))
    analyzer.initialize()
    return analyzer


def test_prompt_contains_question_and_capped_records():
    analyzer = _analyzer("Instructor A leads with 4.9.")
    results = [{"_id": f"I{i}", "avgRating": 4.0} for i in range(20)]

    answer = analyzer.analyze_results("Top instructors?", results)

    assert answer == "Instructor A leads with 4.9."
    human = analyzer.llm.prompts[0][-1].content
    assert "Top instructors?" in human
    assert "Total records: 20" in human
    assert '"I14"' in human
    assert '"I15"' not in human


def test_empty_results_are_described():
    analyzer = _analyzer("Nothing matched.")
    analyzer.analyze_results("Sessions in 1999", [])
    assert "No results found." in analyzer.llm.prompts[0][-1].content


def test_llm_failure_raises_analysis_error():
    analyzer = _analyzer(RuntimeError("service unavailable"))
    with pytest.raises(AnalysisError, match="service unavailable"):
        analyzer.analyze_results("q", [{"a": 1}])


def test_uninitialized_analyzer_refuses():
    with pytest.raises(AnalysisError):
        ResultAnalyzer(llm=_DummyLLM("x")).analyze_results("q", [])
