from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Literal, Optional, Protocol, Tuple

from nibble import constants
from nibble.adapters.types import AnalysisCapability, AnalysisContext, HostingPlatform, RepositoryHost
from nibble.errors import AnalysisError, NibbleError, NotFoundError, ValidationError
from nibble.response import now_iso
from nibble.services import marker_service
from nibble.services.registry_service import InstallationRegistry
from nibble.validators.improvement import ensure_applicable
from nibble.validators.types import Improvement


logger = logging.getLogger(__name__)

OutcomeStatus = Literal["success", "skipped", "failed"]


class Pacer(Protocol):
	async def pause(self) -> None:
		...


class FixedDelayPacer:
	def __init__(self, seconds: float = constants.DEFAULT_REPO_DELAY_S):
		self.seconds = max(float(seconds), 0.0)

	async def pause(self) -> None:
		await asyncio.sleep(self.seconds)


class NoDelayPacer:
	async def pause(self) -> None:
		return None


@dataclass
class WorkflowOutcome:
	status: OutcomeStatus
	repository: str
	reason: Optional[str] = None
	pr_url: Optional[str] = None
	title: Optional[str] = None
	confidence: Optional[float] = None
	error_code: Optional[str] = None
	error_message: Optional[str] = None

	@classmethod
	def success(cls, repository: str, *, pr_url: str, title: str, confidence: float) -> "WorkflowOutcome":
		return cls(status="success", repository=repository, pr_url=pr_url, title=title, confidence=confidence)

	@classmethod
	def skipped(cls, repository: str, reason: str) -> "WorkflowOutcome":
		return cls(status="skipped", repository=repository, reason=reason)

	@classmethod
	def failed(cls, repository: str, *, code: str, message: str) -> "WorkflowOutcome":
		return cls(status="failed", repository=repository, error_code=code, error_message=message)

	def as_dict(self, *, include_error_message: bool = True) -> Dict[str, Any]:
		payload: Dict[str, Any] = {"status": self.status, "repository": self.repository}
		if self.reason is not None:
			payload["reason"] = self.reason
		if self.status == "success":
			payload["pr_url"] = self.pr_url
			payload["title"] = self.title
			payload["confidence"] = self.confidence
		if self.status == "failed":
			payload["error"] = {"code": self.error_code}
			if include_error_message:
				payload["error"]["message"] = self.error_message
		return payload


@dataclass
class BatchReport:
	started_at: str = field(default_factory=now_iso)
	ended_at: Optional[str] = None
	outcomes: List[WorkflowOutcome] = field(default_factory=list)
	skipped_installations: List[int] = field(default_factory=list)

	def counts(self) -> Dict[str, int]:
		totals = {"success": 0, "skipped": 0, "failed": 0}
		for outcome in self.outcomes:
			totals[outcome.status] += 1
		return totals

	def as_dict(self, *, include_error_message: bool = True) -> Dict[str, Any]:
		return {
			"started_at": self.started_at,
			"ended_at": self.ended_at,
			"counts": self.counts(),
			"skipped_installations": list(self.skipped_installations),
			"outcomes": [o.as_dict(include_error_message=include_error_message) for o in self.outcomes],
		}


@dataclass(frozen=True)
class _Selection:
	improvement: Improvement
	content: str


def _utc_today() -> date:
	return datetime.now(timezone.utc).date()


def _error_fields(exc: Exception) -> Tuple[str, str]:
	if isinstance(exc, NibbleError):
		return exc.code, exc.message
	return "internal_error", str(exc) or exc.__class__.__name__


def _confidence_label(confidence: float) -> str:
	if confidence >= 0.9:
		return "High"
	if confidence >= 0.8:
		return "Good"
	return "Moderate"


def build_pr_body(improvement: Improvement) -> str:
	percent = round(improvement.confidence * 100)
	return f"""## Daily Nibble

**Small improvement made:** {improvement.title}

### What changed?
Addressed the `{constants.MARKER_KEYWORD}` comment in `{improvement.path}`:

> {improvement.marker.strip()}

### Why this matters
{improvement.explanation}

### Confidence
{_confidence_label(improvement.confidence)} ({percent}%)

### Review notes
- This is an automated improvement from Nibble
- The change is intentionally small and touches a single file
- The `{constants.MARKER_KEYWORD}` comment has been removed
- Safe to merge if the change looks reasonable

---
*Created by Nibble, making your code slightly better one bite at a time.*"""


class NightlyOrchestrator:
	"""Runs the per-repository improvement workflow across all installations.

	Repositories are processed one at a time. A failure in one repository or
	installation never stops the rest of the batch.
	"""

	def __init__(
		self,
		registry: InstallationRegistry,
		platform: HostingPlatform,
		analyzer: AnalysisCapability,
		*,
		pacer: Optional[Pacer] = None,
		confidence_threshold: float = constants.DEFAULT_CONFIDENCE_THRESHOLD,
		max_candidates: int = constants.DEFAULT_MAX_CANDIDATES,
		context_lines: int = constants.DEFAULT_CONTEXT_LINES,
		today: Callable[[], date] = _utc_today,
	):
		self.registry = registry
		self.platform = platform
		self.analyzer = analyzer
		self.pacer: Pacer = pacer or FixedDelayPacer()
		self.confidence_threshold = confidence_threshold
		self.max_candidates = max(max_candidates, 1)
		self.context_lines = context_lines
		self._today = today
		self._lock = asyncio.Lock()

	async def run_once(self) -> BatchReport:
		if self._lock.locked():
			logger.info("Waiting for the running nibble pass to finish")
		async with self._lock:
			return await self._run_batch()

	async def _run_batch(self) -> BatchReport:
		report = BatchReport()
		logger.info("Starting nightly run")
		first = True
		for installation in self.registry.list_enabled():
			try:
				host = await self.platform.for_installation(installation.id)
			except Exception as exc:
				logger.error(
					"Error processing installation %s: %s",
					installation.id,
					exc,
					extra={"installation_id": installation.id},
				)
				report.skipped_installations.append(installation.id)
				continue

			for repository in installation.repositories:
				if not first:
					await self.pacer.pause()
				first = False
				owner, _, name = repository.full_name.partition("/")
				outcome = await self.perform_workflow(owner, name, host)
				report.outcomes.append(outcome)
			self.registry.mark_run(installation.id)

		report.ended_at = now_iso()
		counts = report.counts()
		logger.info(
			"Nightly run finished: %d success, %d skipped, %d failed",
			counts["success"],
			counts["skipped"],
			counts["failed"],
		)
		return report

	async def run_repository(self, owner: str, name: str) -> WorkflowOutcome:
		installation = self.registry.find(owner, name)
		if installation is None:
			raise NotFoundError(
				f"No installation found for {owner}/{name}. Make sure the app is installed on this repository."
			)
		logger.info("Using installation %s for %s/%s", installation.id, owner, name)
		async with self._lock:
			try:
				host = await self.platform.for_installation(installation.id)
			except Exception as exc:
				return self._failed(f"{owner}/{name}", exc)
			return await self.perform_workflow(owner, name, host)

	async def perform_workflow(self, owner: str, name: str, host: RepositoryHost) -> WorkflowOutcome:
		repository = f"{owner}/{name}"
		logger.info("Performing nibble on %s", repository)

		try:
			open_requests = await host.list_open_change_requests(owner, name, constants.BRANCH_PREFIX)
			if open_requests:
				logger.info("Skipping %s, existing Nibble PR found", repository)
				return WorkflowOutcome.skipped(repository, "existing_pr")

			default_branch = await host.get_default_branch(owner, name)
			head_sha = await host.get_ref(owner, name, default_branch)
			branch = marker_service.branch_name(self._today())
			await host.create_ref(owner, name, branch, head_sha)
		except Exception as exc:
			return self._failed(repository, exc)

		try:
			selection, reason = await self._select_improvement(owner, name, host, branch)
			if selection is None:
				await self._delete_branch(host, owner, name, branch)
				return WorkflowOutcome.skipped(repository, reason)

			improvement = selection.improvement
			updated = marker_service.apply_improvement(selection.content, improvement)
			await host.update_file_content(
				owner,
				name,
				improvement.path,
				content=updated,
				branch=branch,
				expected_fingerprint=improvement.fingerprint,
				message=f"Nibble: {improvement.title}",
			)
			change_request = await host.create_change_request(
				owner,
				name,
				title=f"{constants.PR_TITLE_PREFIX}: {improvement.title}",
				body=build_pr_body(improvement),
				head=branch,
				base=default_branch,
			)
		except Exception as exc:
			await self._delete_branch(host, owner, name, branch)
			return self._failed(repository, exc)

		logger.info("Created nibble PR #%s for %s", change_request.number, repository)
		return WorkflowOutcome.success(
			repository,
			pr_url=change_request.url,
			title=improvement.title,
			confidence=improvement.confidence,
		)

	async def _select_improvement(
		self,
		owner: str,
		name: str,
		host: RepositoryHost,
		branch: str,
	) -> Tuple[Optional[_Selection], str]:
		paths = await host.search_code(owner, name, constants.MARKER_KEYWORD)
		if not paths:
			logger.info("No %s markers found in %s/%s", constants.MARKER_KEYWORD, owner, name)
			return None, "no_candidate"

		for path in paths[: self.max_candidates]:
			file = await host.get_file_content(owner, name, path, branch)
			candidate = marker_service.locate_marker(file.content, path)
			if candidate is None:
				logger.debug("No full-line marker comment in %s", path)
				continue

			language = marker_service.detect_language(path)
			context = marker_service.extract_context(file.content, candidate.line_index, self.context_lines)
			try:
				suggestion = await self.analyzer.analyze(
					AnalysisContext(
						path=path,
						marker_comment=context.marker_comment,
						surrounding_code=context.surrounding_code,
						language=language,
					)
				)
			except AnalysisError as exc:
				logger.warning("Analysis failed for %s: %s", path, exc.message, extra={"error_code": exc.code})
				continue
			if suggestion is None:
				continue

			try:
				ensure_applicable(file.content, suggestion, self.confidence_threshold)
			except ValidationError as exc:
				logger.info("Rejected suggestion for %s: %s", path, exc.message)
				continue

			improvement = Improvement(
				path=path,
				search_text=suggestion.search_text,
				replace_text=suggestion.replace_text,
				title=suggestion.title,
				explanation=suggestion.explanation,
				confidence=suggestion.confidence,
				marker=candidate.line,
				fingerprint=file.fingerprint,
				language=language,
				marker_index=candidate.line_index,
			)
			return _Selection(improvement=improvement, content=file.content), ""

		return None, "no_improvement_found"

	async def _delete_branch(self, host: RepositoryHost, owner: str, name: str, branch: str) -> None:
		try:
			await host.delete_ref(owner, name, branch)
		except Exception as exc:
			logger.warning("Failed to delete branch %s on %s/%s: %s", branch, owner, name, exc)

	def _failed(self, repository: str, exc: Exception) -> WorkflowOutcome:
		code, message = _error_fields(exc)
		logger.error("Error nibbling %s: %s", repository, message, extra={"error_code": code})
		return WorkflowOutcome.failed(repository, code=code, message=message)
