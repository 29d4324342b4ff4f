from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Optional

from openai import APIError, APITimeoutError, AsyncOpenAI

from nibble import constants
from nibble.adapters.types import AnalysisContext
from nibble.errors import AnalysisError, ValidationError
from nibble.validators.improvement import parse_suggestion
from nibble.validators.types import Suggestion


logger = logging.getLogger(__name__)

_TEMPERATURE = 0.1
_MAX_TOKENS = 1000

SYSTEM_PROMPT = """You are a senior software engineer helping to make small, incremental improvements to codebases.

Key principles:
- Make SMALL changes only (1-10 lines typically)
- Prioritize safety and readability over cleverness
- Preserve existing functionality
- Follow established code patterns
- Be conservative - if unsure, don't change anything
- Only suggest improvements that are clearly beneficial

You specialize in finding opportunities for:
- Adding error handling
- Improving variable names
- Adding helpful comments
- Simplifying complex expressions
- Following language best practices
- Removing obvious code smells

Always respond in valid JSON format."""


def build_prompt(context: AnalysisContext) -> str:
	return f"""You are analyzing a {constants.MARKER_KEYWORD} comment in a {context.language} file.

{constants.MARKER_KEYWORD} comments indicate small improvements that could be made to the code.
Your job is to suggest a simple, focused improvement.

File: {context.path}
{constants.MARKER_KEYWORD} Comment: {context.marker_comment}

Surrounding Code:
```{context.language}
{context.surrounding_code}
```

Please suggest a small improvement that addresses the {constants.MARKER_KEYWORD} comment.
Focus on:
- Simple, safe changes
- Better readability, error handling, or performance
- Following best practices for {context.language}

Respond with exactly this JSON format:
{{
  "canImprove": true/false,
  "title": "Brief description of the improvement",
  "explanation": "Why this improvement helps",
  "searchText": "exact text to find (multi-line ok)",
  "replaceText": "exact replacement text",
  "confidence": 0.1-1.0
}}

If you cannot suggest a safe improvement, set "canImprove": false."""


def _build_messages(context: AnalysisContext) -> List[Dict[str, str]]:
	return [
		{"role": "system", "content": SYSTEM_PROMPT},
		{"role": "user", "content": build_prompt(context)},
	]


def _extract_json_object(raw: str) -> Optional[Dict[str, Any]]:
	candidate = raw.strip()
	if candidate.startswith("```"):
		candidate = re.sub(r"^```[a-zA-Z]*\s*", "", candidate)
		candidate = re.sub(r"\s*```$", "", candidate)
	start = candidate.find("{")
	end = candidate.rfind("}")
	if start == -1 or end == -1 or end <= start:
		return None
	try:
		parsed = json.loads(candidate[start : end + 1])
	except json.JSONDecodeError:
		return None
	if not isinstance(parsed, dict):
		return None
	return parsed


def _openai_error(exc: Exception) -> AnalysisError:
	if isinstance(exc, (TimeoutError, APITimeoutError)):
		return AnalysisError("Analysis provider timed out.", code="analysis_timeout")
	return AnalysisError("Analysis provider request failed.", code="analysis_provider_error")


def _build_openai_client(*, api_key: str, timeout_s: float) -> AsyncOpenAI:
	return AsyncOpenAI(api_key=api_key, timeout=timeout_s)


class OpenAIAnalyzer:
	"""Asks a chat-completions model for one small change around a marker comment."""

	def __init__(
		self,
		*,
		api_key: str,
		model: str = constants.DEFAULT_OPENAI_MODEL,
		timeout_s: float = constants.DEFAULT_OPENAI_TIMEOUT_S,
		client: Optional[AsyncOpenAI] = None,
	):
		self.model = model
		self._client = client or _build_openai_client(api_key=api_key, timeout_s=timeout_s)

	async def analyze(self, context: AnalysisContext) -> Optional[Suggestion]:
		try:
			response = await self._client.chat.completions.create(
				model=self.model,
				messages=_build_messages(context),
				temperature=_TEMPERATURE,
				max_tokens=_MAX_TOKENS,
				response_format={"type": "json_object"},
			)
		except (APIError, TimeoutError) as exc:
			raise _openai_error(exc) from exc

		raw = ""
		if response.choices:
			raw = response.choices[0].message.content or ""
		payload = _extract_json_object(raw)
		if payload is None:
			logger.warning("No JSON found in analysis response for %s", context.path)
			return None
		try:
			suggestion = parse_suggestion(payload)
		except ValidationError as exc:
			logger.warning("Invalid analysis response for %s: %s", context.path, exc.message)
			return None
		if suggestion is None:
			logger.info("Analysis declined to improve %s", context.path)
		return suggestion

	async def close(self) -> None:
		await self._client.close()
