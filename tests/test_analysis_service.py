from __future__ import annotations

import json
from types import SimpleNamespace
from unittest import IsolatedAsyncioTestCase, TestCase

from nibble.adapters.types import AnalysisContext
from nibble.errors import AnalysisError
from nibble.services.analysis_service import OpenAIAnalyzer, _extract_json_object, build_prompt


CONTEXT = AnalysisContext(
	path="src/app.py",
	marker_comment="# NIBBLE: rename x",
	surrounding_code="# NIBBLE: rename x\nx = 1",
	language="python",
)


class _FakeCompletions:
	def __init__(self, *, content: str | None = None, error: Exception | None = None):
		self._content = content
		self._error = error
		self.calls: list[dict] = []

	async def create(self, **kwargs):
		self.calls.append(kwargs)
		if self._error is not None:
			raise self._error
		message = SimpleNamespace(content=self._content)
		return SimpleNamespace(choices=[SimpleNamespace(message=message)])


class _FakeClient:
	def __init__(self, **kwargs):
		self.chat = SimpleNamespace(completions=_FakeCompletions(**kwargs))


def _analyzer(**kwargs) -> OpenAIAnalyzer:
	return OpenAIAnalyzer(api_key="test", client=_FakeClient(**kwargs))


class PromptTests(TestCase):
	def test_prompt_includes_context(self) -> None:
		prompt = build_prompt(CONTEXT)
		self.assertIn("File: src/app.py", prompt)
		self.assertIn("```python\n# NIBBLE: rename x\nx = 1\n```", prompt)
		self.assertIn('"canImprove": true/false', prompt)

	def test_json_extraction_tolerates_fences(self) -> None:
		self.assertEqual(_extract_json_object('```json\n{"a": 1}\n```'), {"a": 1})
		self.assertEqual(_extract_json_object('Sure! {"a": 2} done'), {"a": 2})
		self.assertIsNone(_extract_json_object("no json here"))
		self.assertIsNone(_extract_json_object("{broken"))


class AnalyzerTests(IsolatedAsyncioTestCase):
	async def test_returns_suggestion(self) -> None:
		content = json.dumps(
			{
				"canImprove": True,
				"title": "Rename x",
				"explanation": "x says nothing",
				"searchText": "x = 1",
				"replaceText": "retries = 1",
				"confidence": 0.8,
			}
		)
		analyzer = _analyzer(content=content)
		result = await analyzer.analyze(CONTEXT)
		self.assertEqual(result.replace_text, "retries = 1")
		call = analyzer._client.chat.completions.calls[0]
		self.assertEqual(call["model"], "gpt-4o-mini")
		self.assertEqual(call["temperature"], 0.1)
		self.assertEqual(call["max_tokens"], 1000)
		self.assertEqual(call["messages"][0]["role"], "system")

	async def test_declined_and_malformed_return_none(self) -> None:
		for content in ('{"canImprove": false}', '{"canImprove": true, "title": 3}', "nothing", None):
			with self.subTest(content=content):
				self.assertIsNone(await _analyzer(content=content).analyze(CONTEXT))

	async def test_transport_errors_become_analysis_errors(self) -> None:
		analyzer = _analyzer(error=TimeoutError("slow"))
		with self.assertRaises(AnalysisError) as ctx:
			await analyzer.analyze(CONTEXT)
		self.assertEqual(ctx.exception.code, "analysis_timeout")
