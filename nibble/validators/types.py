# nibble/validators/types.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Optional


MarkerSyntax = Literal["#", "//"]


@dataclass(frozen=True)
class Candidate:
	path: str
	line: str
	line_index: int
	syntax: MarkerSyntax


@dataclass(frozen=True)
class Suggestion:
	title: str
	explanation: str
	search_text: str
	replace_text: str
	confidence: float


@dataclass(frozen=True)
class Improvement:
	path: str
	search_text: str
	replace_text: str
	title: str
	explanation: str
	confidence: float
	marker: str
	fingerprint: str
	language: str = "text"
	marker_index: Optional[int] = None
