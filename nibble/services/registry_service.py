from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

from nibble.adapters import store_adapter
from nibble.errors import PersistenceError
from nibble.response import now_iso, parse_iso
from nibble.schemas import Installation, InstallationSummary, Repository


logger = logging.getLogger(__name__)

ListInstallationsFn = Callable[[], Awaitable[List[InstallationSummary]]]
ListRepositoriesFn = Callable[[int], Awaitable[List[Repository]]]
ExistsCheckFn = Callable[[int], Awaitable[Optional[bool]]]


@dataclass
class ReconcileReport:
	refreshed: int = 0
	skipped: List[int] = field(default_factory=list)

	def as_dict(self) -> Dict[str, object]:
		return {"refreshed": self.refreshed, "skipped": list(self.skipped)}


def _created_sort_key(installation: Installation) -> tuple:
	created = parse_iso(installation.created_at)
	stamp = created.timestamp() if created else float("-inf")
	# Newest first, then the lexicographically smaller identifier.
	return (-stamp, str(installation.id))


class InstallationRegistry:
	"""In-memory table of installations, mirrored to a JSON file on every change."""

	def __init__(self, data_file: Optional[str] = None, *, autoload: bool = True):
		self._data_file = data_file
		self._installations: Dict[int, Installation] = {}
		if autoload:
			self.load()

	def load(self) -> int:
		for installation in store_adapter.load_installations(self._data_file):
			self._installations[installation.id] = installation
		return len(self._installations)

	def _persist(self) -> None:
		try:
			store_adapter.save_installations(list(self._installations.values()), self._data_file)
		except PersistenceError as exc:
			# In-memory state stays authoritative; the next mutation retries the write.
			logger.error("Failed to persist installations: %s", exc.message)

	def record(self, installation: Installation, initial_repositories: Iterable[Repository] = ()) -> Installation:
		stored = installation.model_copy(deep=True)
		repositories = list(initial_repositories) or list(stored.repositories)
		stored.repositories = _unique_repositories(repositories)
		stored.updated_at = now_iso()
		self._installations[stored.id] = stored
		self._persist()
		logger.info(
			"Stored installation %s for %s with %d repositories",
			stored.id,
			stored.account,
			len(stored.repositories),
		)
		return stored.model_copy(deep=True)

	def add_repository(
		self,
		installation_id: int,
		repository: Repository,
		*,
		account: str = "",
	) -> bool:
		"""Bind a repository to an installation. Returns True when something changed."""
		installation = self._installations.get(installation_id)
		if installation is None:
			logger.info("Installation %s not found, creating new entry", installation_id)
			self.record(Installation(id=installation_id, account=account), [repository])
			return True
		if installation.has_repository(repository.full_name):
			return False
		installation.repositories.append(repository.model_copy())
		installation.updated_at = now_iso()
		self._persist()
		logger.info("Added %s to installation %s", repository.full_name, installation_id)
		return True

	def remove(self, installation_id: int) -> bool:
		if self._installations.pop(installation_id, None) is None:
			return False
		self._persist()
		logger.info("Removed installation %s", installation_id)
		return True

	def mark_run(self, installation_id: int, when: Optional[str] = None) -> None:
		installation = self._installations.get(installation_id)
		if installation is None:
			return
		installation.last_run = when or now_iso()
		self._persist()

	async def reconcile_from_source(
		self,
		list_installations: ListInstallationsFn,
		list_repositories_for: ListRepositoriesFn,
	) -> ReconcileReport:
		logger.info("Refreshing installations from source")
		summaries = await list_installations()
		previous = self._installations
		rebuilt: Dict[int, Installation] = {}
		report = ReconcileReport()
		for summary in summaries:
			try:
				repositories = await list_repositories_for(summary.id)
			except Exception as exc:
				report.skipped.append(summary.id)
				logger.warning(
					"Skipping installation %s during refresh: %s",
					summary.id,
					exc,
					extra={"installation_id": summary.id},
				)
				if summary.id in previous:
					rebuilt[summary.id] = previous[summary.id]
				continue
			prior = previous.get(summary.id)
			rebuilt[summary.id] = Installation(
				id=summary.id,
				account=summary.account,
				repositories=_unique_repositories(repositories),
				last_run=prior.last_run if prior else None,
				enabled=prior.enabled if prior else True,
				created_at=summary.created_at or (prior.created_at if prior else now_iso()),
				updated_at=now_iso(),
			)
			report.refreshed += 1
		self._installations = rebuilt
		self._persist()
		logger.info(
			"Refreshed %d installations (%d skipped)",
			report.refreshed,
			len(report.skipped),
		)
		return report

	def deduplicate(self) -> int:
		"""Keep each repository bound only to its newest installation.

		Returns the number of bindings removed. Installation records themselves
		are kept even when they end up with no repositories.
		"""
		holders: Dict[str, List[Installation]] = {}
		for installation in self._installations.values():
			for repo in installation.repositories:
				holders.setdefault(repo.full_name, []).append(installation)

		removed = 0
		for full_name, owners in holders.items():
			unique_owners = {inst.id: inst for inst in owners}
			if len(unique_owners) < 2:
				continue
			ranked = sorted(unique_owners.values(), key=_created_sort_key)
			keeper = ranked[0]
			for loser in ranked[1:]:
				loser.repositories = [r for r in loser.repositories if r.full_name != full_name]
				loser.updated_at = now_iso()
				removed += 1
				logger.info(
					"Dropped duplicate binding %s from installation %s (kept on %s)",
					full_name,
					loser.id,
					keeper.id,
				)
		if removed:
			self._persist()
		return removed

	async def validate_against_source(self, exists_check: ExistsCheckFn) -> List[int]:
		removed: List[int] = []
		for installation_id in list(self._installations):
			try:
				exists = await exists_check(installation_id)
			except Exception as exc:
				logger.warning("Could not verify installation %s: %s", installation_id, exc)
				continue
			if exists is False:
				self._installations.pop(installation_id, None)
				removed.append(installation_id)
				logger.info("Installation %s no longer exists, removed", installation_id)
		if removed:
			self._persist()
		return removed

	def get(self, installation_id: int) -> Optional[Installation]:
		installation = self._installations.get(installation_id)
		return installation.model_copy(deep=True) if installation else None

	def find(self, owner: str, name: str) -> Optional[Installation]:
		full_name = f"{owner}/{name}"
		for installation in self._installations.values():
			if installation.has_repository(full_name):
				return installation.model_copy(deep=True)
		return None

	def list_all(self) -> List[Installation]:
		return [inst.model_copy(deep=True) for inst in self._installations.values()]

	def list_enabled(self) -> List[Installation]:
		return [inst.model_copy(deep=True) for inst in self._installations.values() if inst.enabled]


def _unique_repositories(repositories: Iterable[Repository]) -> List[Repository]:
	seen: set[str] = set()
	unique: List[Repository] = []
	for repo in repositories:
		if repo.full_name in seen:
			continue
		seen.add(repo.full_name)
		unique.append(repo.model_copy())
	return unique
