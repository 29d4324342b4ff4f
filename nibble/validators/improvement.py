# nibble/validators/improvement.py
from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

from nibble import constants
from nibble.errors import ValidationError

from .types import Suggestion


_STRING_FIELDS = ("title", "explanation", "searchText", "replaceText")


def count_occurrences(content: str, search_text: str) -> int:
	"""Count occurrences of ``search_text``, overlapping ones included."""
	if not search_text:
		return 0
	count = 0
	start = content.find(search_text)
	while start != -1:
		count += 1
		start = content.find(search_text, start + 1)
	return count


def validate_unique(content: str, search_text: str) -> bool:
	return count_occurrences(content, search_text) == 1


def validate_shape(payload: Any) -> bool:
	if not isinstance(payload, Mapping):
		return False
	for key in _STRING_FIELDS:
		if not isinstance(payload.get(key), str):
			return False
	if not payload["searchText"]:
		return False
	confidence = payload.get("confidence")
	# bool is an int subclass, so exclude it explicitly.
	if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
		return False
	if not 0 <= confidence <= 1:
		return False
	return isinstance(payload.get("canImprove"), bool)


def parse_suggestion(payload: Dict[str, Any]) -> Optional[Suggestion]:
	"""Turn a raw analysis payload into a Suggestion.

	Returns None when the analysis declined to suggest anything and raises
	ValidationError when the payload does not have the expected shape.
	"""
	if isinstance(payload, Mapping) and payload.get("canImprove") is False:
		return None
	if not validate_shape(payload):
		raise ValidationError("Suggestion payload has an invalid shape.", code="invalid_suggestion")
	return Suggestion(
		title=payload["title"].strip(),
		explanation=payload["explanation"].strip(),
		search_text=payload["searchText"],
		replace_text=payload["replaceText"],
		confidence=float(payload["confidence"]),
	)


def ensure_applicable(
	content: str,
	suggestion: Suggestion,
	threshold: float = constants.DEFAULT_CONFIDENCE_THRESHOLD,
) -> None:
	if suggestion.confidence <= threshold:
		raise ValidationError(
			f"Confidence {suggestion.confidence:.2f} is not above {threshold:.2f}.",
			code="low_confidence",
		)
	occurrences = count_occurrences(content, suggestion.search_text)
	if occurrences != 1:
		raise ValidationError(
			f"Search text occurs {occurrences} times, expected exactly once.",
			code="ambiguous_search_text",
		)
