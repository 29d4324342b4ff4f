from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import List, Optional

from nibble import constants
from nibble.errors import ValidationError
from nibble.validators.types import Candidate, Improvement


@dataclass(frozen=True)
class MarkerContext:
	surrounding_code: str
	marker_comment: str
	context_start: int
	context_end: int
	total_lines: int


def _marker_syntax(line: str) -> Optional[str]:
	stripped = line.strip()
	for syntax in constants.MARKER_SYNTAXES:
		if stripped.startswith(syntax) and constants.MARKER_KEYWORD in stripped[len(syntax):]:
			return syntax
	return None


def locate_marker(content: str, path: str) -> Optional[Candidate]:
	"""Return the first full-line marker comment in ``content``.

	Trailing comments after code never qualify, so deleting the marker line
	can't remove code.
	"""
	for index, line in enumerate(content.split("\n")):
		syntax = _marker_syntax(line)
		if syntax is not None:
			return Candidate(path=path, line=line, line_index=index, syntax=syntax)
	return None


def extract_context(
	content: str,
	line_index: int,
	context_lines: int = constants.DEFAULT_CONTEXT_LINES,
) -> MarkerContext:
	lines = content.split("\n")
	start = max(0, line_index - context_lines)
	end = min(len(lines), line_index + context_lines)
	return MarkerContext(
		surrounding_code="\n".join(lines[start:end]),
		marker_comment=lines[line_index] if 0 <= line_index < len(lines) else "",
		context_start=start,
		context_end=end,
		total_lines=len(lines),
	)


def detect_language(path: str) -> str:
	name = path.rsplit("/", 1)[-1]
	if "." not in name:
		return "text"
	extension = name.rsplit(".", 1)[-1].lower()
	return constants.LANGUAGE_BY_EXTENSION.get(extension, "text")


def _originating_marker(lines: List[str], marker: str, near: Optional[int]) -> Optional[int]:
	target = marker.strip()
	if not target:
		return None
	if near is not None and 0 <= near < len(lines) and lines[near].strip() == target:
		return near
	matches = [index for index, line in enumerate(lines) if line.strip() == target]
	if not matches:
		return None
	if near is None:
		return matches[0]
	return min(matches, key=lambda index: (abs(index - near), index))


def _line_at(content: str, offset: int) -> int:
	return content.count("\n", 0, offset)


def apply_improvement(content: str, improvement: Improvement) -> str:
	"""Substitute the search text once, then drop the originating marker line.

	The marker is tracked through the substitution by position. When the
	search text covers the marker, only a marker line inside the replacement
	is removed; other markers in the file are left alone.
	"""
	position = content.find(improvement.search_text)
	if not improvement.search_text or position == -1:
		raise ValidationError(
			f"Search text not found in {improvement.path}.",
			code="search_text_missing",
		)
	search_end = position + len(improvement.search_text)
	updated = content[:position] + improvement.replace_text + content[search_end:]
	lines = updated.split("\n")

	marker_index = _originating_marker(content.split("\n"), improvement.marker, improvement.marker_index)
	if marker_index is None:
		return updated

	first_line = _line_at(content, position)
	last_line = _line_at(content, search_end)
	if marker_index < first_line:
		chosen: Optional[int] = marker_index
	elif marker_index > last_line:
		chosen = marker_index + improvement.replace_text.count("\n") - improvement.search_text.count("\n")
	else:
		# marker sits inside the replaced span
		chosen = None
		target = improvement.marker.strip()
		for index in range(first_line, first_line + improvement.replace_text.count("\n") + 1):
			if lines[index].strip() == target:
				chosen = index
				break

	if chosen is None or lines[chosen].strip() != improvement.marker.strip():
		return updated
	return "\n".join(lines[:chosen] + lines[chosen + 1:])


def branch_name(day: Optional[date] = None) -> str:
	current = day or datetime.now(timezone.utc).date()
	return f"{constants.BRANCH_PREFIX}-{current.isoformat()}"
