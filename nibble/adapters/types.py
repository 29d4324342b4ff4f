# nibble/adapters/types.py
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Protocol

from nibble.schemas import InstallationSummary, Repository
from nibble.validators.types import Suggestion


@dataclass(frozen=True)
class FileContent:
	content: str
	fingerprint: str


@dataclass(frozen=True)
class ChangeRequest:
	number: int
	url: str
	head: str = ""


@dataclass(frozen=True)
class AnalysisContext:
	path: str
	marker_comment: str
	surrounding_code: str
	language: str


class RepositoryHost(Protocol):
	"""Repository operations scoped to a single installation."""

	async def list_open_change_requests(self, owner: str, name: str, head_prefix: str) -> List[ChangeRequest]:
		...

	async def get_default_branch(self, owner: str, name: str) -> str:
		...

	async def get_ref(self, owner: str, name: str, branch: str) -> str:
		...

	async def create_ref(self, owner: str, name: str, branch: str, sha: str) -> None:
		...

	async def delete_ref(self, owner: str, name: str, branch: str) -> None:
		...

	async def search_code(self, owner: str, name: str, keyword: str) -> List[str]:
		...

	async def get_file_content(self, owner: str, name: str, path: str, ref: str) -> FileContent:
		...

	async def update_file_content(
		self,
		owner: str,
		name: str,
		path: str,
		*,
		content: str,
		branch: str,
		expected_fingerprint: str,
		message: str,
	) -> None:
		...

	async def create_change_request(
		self,
		owner: str,
		name: str,
		*,
		title: str,
		body: str,
		head: str,
		base: str,
	) -> ChangeRequest:
		...


class HostingPlatform(Protocol):
	"""App-level view of the hosting platform."""

	async def list_installations(self) -> List[InstallationSummary]:
		...

	async def list_repositories_for_installation(self, installation_id: int) -> List[Repository]:
		...

	async def installation_exists(self, installation_id: int) -> Optional[bool]:
		...

	async def for_installation(self, installation_id: int) -> RepositoryHost:
		...


class AnalysisCapability(Protocol):
	async def analyze(self, context: AnalysisContext) -> Optional[Suggestion]:
		...
