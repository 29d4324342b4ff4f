from __future__ import annotations

import asyncio
from datetime import date
from pathlib import Path
from tempfile import TemporaryDirectory
from unittest import IsolatedAsyncioTestCase

from fakes import FakeAnalyzer, FakeHost, FakePlatform, suggestion

from nibble.errors import AnalysisError, NotFoundError, ProviderError
from nibble.schemas import Installation, Repository
from nibble.services.orchestrator_service import NightlyOrchestrator, NoDelayPacer
from nibble.services.registry_service import InstallationRegistry


BRANCH = "nibble/daily-improvement-2024-06-01"

APP_PY = "\n".join(
	[
		"def total(items):",
		"    # NIBBLE: use a clearer accumulator name",
		"    t = 0",
		"    for item in items:",
		"        t += item",
		"    return t",
		"",
	]
)


class CountingPacer:
	def __init__(self) -> None:
		self.pauses = 0

	async def pause(self) -> None:
		self.pauses += 1


class SlowSearchHost(FakeHost):
	"""Holds each workflow open inside code search and tracks overlap."""

	def __init__(self, **kwargs) -> None:
		super().__init__(**kwargs)
		self.active = 0
		self.peak = 0

	async def search_code(self, owner: str, name: str, keyword: str):
		self.active += 1
		self.peak = max(self.peak, self.active)
		try:
			await asyncio.sleep(0.01)
			return await super().search_code(owner, name, keyword)
		finally:
			self.active -= 1


class OrchestratorTestBase(IsolatedAsyncioTestCase):
	def setUp(self) -> None:
		self._tmp = TemporaryDirectory()
		self.registry = InstallationRegistry(str(Path(self._tmp.name) / "installations.json"))
		self.platform = FakePlatform()
		self.analyzer = FakeAnalyzer()
		self.orchestrator = self._orchestrator()

	def tearDown(self) -> None:
		self._tmp.cleanup()

	def _orchestrator(self, **overrides) -> NightlyOrchestrator:
		return NightlyOrchestrator(
			self.registry,
			self.platform,
			self.analyzer,
			pacer=overrides.pop("pacer", NoDelayPacer()),
			today=lambda: date(2024, 6, 1),
			**overrides,
		)


class PerformWorkflowTests(OrchestratorTestBase):
	async def test_existing_pr_skips_without_creating_branch(self) -> None:
		host = FakeHost(files={"app.py": APP_PY}, open_heads=["nibble/daily-improvement-2024-05-31"])
		outcome = await self.orchestrator.perform_workflow("acme", "api", host)
		self.assertEqual(outcome.status, "skipped")
		self.assertEqual(outcome.reason, "existing_pr")
		self.assertEqual(host.created_refs, [])
		self.assertEqual(self.analyzer.contexts, [])

	async def test_unrelated_open_pr_does_not_skip(self) -> None:
		host = FakeHost(files={}, search_paths=[], open_heads=["feature/login"])
		outcome = await self.orchestrator.perform_workflow("acme", "api", host)
		self.assertEqual(outcome.reason, "no_candidate")

	async def test_no_candidate_deletes_branch(self) -> None:
		host = FakeHost(files={}, search_paths=[])
		outcome = await self.orchestrator.perform_workflow("acme", "api", host)
		self.assertEqual(outcome.status, "skipped")
		self.assertEqual(outcome.reason, "no_candidate")
		self.assertEqual(host.created_refs, [BRANCH])
		self.assertEqual(host.deleted_refs, [BRANCH])

	async def test_end_to_end_success(self) -> None:
		host = FakeHost(files={"app.py": APP_PY})
		self.analyzer.results["app.py"] = suggestion(
			"    t = 0\n    for item in items:\n        t += item\n    return t",
			"    running_total = 0\n    for item in items:\n        running_total += item\n    return running_total",
			confidence=0.92,
			title="Rename accumulator",
		)
		outcome = await self.orchestrator.perform_workflow("acme", "api", host)

		self.assertEqual(outcome.status, "success")
		self.assertEqual(outcome.pr_url, "https://example.test/acme/api/pull/1")
		self.assertEqual(outcome.title, "Rename accumulator")
		self.assertEqual(host.deleted_refs, [])
		self.assertEqual(host.updates[0]["branch"], BRANCH)
		self.assertEqual(host.updates[0]["message"], "Nibble: Rename accumulator")

		updated = host.files["app.py"]
		self.assertNotIn("NIBBLE", updated)
		self.assertTrue(updated.startswith("def total(items):\n    running_total = 0\n"))
		self.assertTrue(updated.endswith("return running_total\n"))

		pull = host.pulls[0]
		self.assertEqual(pull["title"], "Daily Nibble: Rename accumulator")
		self.assertEqual(pull["head"], BRANCH)
		self.assertEqual(pull["base"], "main")
		self.assertIn("92%", pull["body"])

		context = self.analyzer.contexts[0]
		self.assertEqual(context.language, "python")
		self.assertIn("NIBBLE", context.marker_comment)

	async def test_ambiguous_suggestion_falls_through_to_next_candidate(self) -> None:
		dup = "# NIBBLE: dedupe\nx = 1\nx = 1\n"
		host = FakeHost(files={"a.py": dup, "b.py": APP_PY}, search_paths=["a.py", "b.py"])
		self.analyzer.results = {
			"a.py": suggestion("x = 1", "x = 2"),
			"b.py": suggestion("    t = 0", "    subtotal = 0"),
		}
		outcome = await self.orchestrator.perform_workflow("acme", "api", host)
		self.assertEqual(outcome.status, "success")
		self.assertEqual(host.updates[0]["path"], "b.py")
		self.assertEqual(host.files["a.py"], dup)

	async def test_low_confidence_everywhere_is_no_improvement(self) -> None:
		host = FakeHost(files={"app.py": APP_PY})
		self.analyzer.results["app.py"] = suggestion("    t = 0", "    s = 0", confidence=0.7)
		outcome = await self.orchestrator.perform_workflow("acme", "api", host)
		self.assertEqual(outcome.reason, "no_improvement_found")
		self.assertEqual(host.deleted_refs, [BRANCH])
		self.assertEqual(host.updates, [])

	async def test_candidate_attempts_are_bounded(self) -> None:
		files = {f"f{i}.py": f"# NIBBLE {i}\nvalue = {i}\n" for i in range(8)}
		host = FakeHost(files=files, search_paths=sorted(files))
		outcome = await self._orchestrator(max_candidates=3).perform_workflow("acme", "api", host)
		self.assertEqual(outcome.reason, "no_improvement_found")
		self.assertEqual(len(self.analyzer.contexts), 3)

	async def test_trailing_marker_comment_is_not_a_candidate(self) -> None:
		host = FakeHost(files={"a.py": "value = 1  # NIBBLE tidy\n"})
		self.analyzer.default = suggestion("value = 1", "value = 2")
		outcome = await self.orchestrator.perform_workflow("acme", "api", host)
		self.assertEqual(outcome.reason, "no_improvement_found")
		self.assertEqual(self.analyzer.contexts, [])

	async def test_failure_after_branch_creation_compensates(self) -> None:
		host = FakeHost(files={"app.py": APP_PY}, fail_on=["create_change_request"])
		self.analyzer.results["app.py"] = suggestion("    t = 0", "    subtotal = 0")
		outcome = await self.orchestrator.perform_workflow("acme", "api", host)
		self.assertEqual(outcome.status, "failed")
		self.assertEqual(outcome.error_code, "provider_error")
		self.assertEqual(host.deleted_refs, [BRANCH])

	async def test_analysis_error_moves_on_to_next_candidate(self) -> None:
		host = FakeHost(files={"a.py": APP_PY, "b.py": APP_PY}, search_paths=["a.py", "b.py"])
		self.analyzer.results = {
			"a.py": AnalysisError("timed out", code="analysis_timeout"),
			"b.py": suggestion("    t = 0", "    subtotal = 0"),
		}
		outcome = await self.orchestrator.perform_workflow("acme", "api", host)
		self.assertEqual(outcome.status, "success")
		self.assertEqual([c.path for c in self.analyzer.contexts], ["a.py", "b.py"])
		self.assertEqual(host.updates[0]["path"], "b.py")

	async def test_analysis_errors_everywhere_clean_up(self) -> None:
		host = FakeHost(files={"app.py": APP_PY})
		self.analyzer.default = AnalysisError("boom")
		outcome = await self.orchestrator.perform_workflow("acme", "api", host)
		self.assertEqual(outcome.status, "skipped")
		self.assertEqual(outcome.reason, "no_improvement_found")
		self.assertEqual(host.deleted_refs, [BRANCH])

	async def test_failure_before_branch_creation_has_nothing_to_clean(self) -> None:
		host = FakeHost(files={"app.py": APP_PY}, fail_on=["create_ref"])
		outcome = await self.orchestrator.perform_workflow("acme", "api", host)
		self.assertEqual(outcome.status, "failed")
		self.assertEqual(host.deleted_refs, [])

	async def test_cleanup_failure_is_swallowed(self) -> None:
		host = FakeHost(files={}, search_paths=[], fail_on=["delete_ref"])
		outcome = await self.orchestrator.perform_workflow("acme", "api", host)
		self.assertEqual(outcome.reason, "no_candidate")

	async def test_hardened_payload_hides_error_message(self) -> None:
		host = FakeHost(fail_on=["get_default_branch"])
		outcome = await self.orchestrator.perform_workflow("acme", "api", host)
		self.assertEqual(outcome.as_dict(include_error_message=False)["error"], {"code": "provider_error"})
		self.assertIn("message", outcome.as_dict()["error"])


class BatchTests(OrchestratorTestBase):
	async def test_run_once_isolates_installations_and_paces(self) -> None:
		self.registry.record(Installation(id=1, account="acme"), [Repository(full_name="acme/api"), Repository(full_name="acme/web")])
		self.registry.record(Installation(id=2, account="beta"), [Repository(full_name="beta/core")])
		self.registry.record(Installation(id=3, account="off", enabled=False), [Repository(full_name="off/x")])
		self.platform.hosts = {
			1: FakeHost(files={}, search_paths=[]),
			2: ProviderError("token request failed"),
		}
		pacer = CountingPacer()
		report = await self._orchestrator(pacer=pacer).run_once()

		self.assertEqual([o.repository for o in report.outcomes], ["acme/api", "acme/web"])
		self.assertEqual(report.skipped_installations, [2])
		self.assertEqual(pacer.pauses, 1)
		self.assertIsNotNone(self.registry.get(1).last_run)
		self.assertIsNone(self.registry.get(2).last_run)
		self.assertIsNotNone(report.ended_at)
		self.assertEqual(report.counts()["skipped"], 2)

	async def test_one_failing_repository_does_not_stop_the_batch(self) -> None:
		self.registry.record(Installation(id=1), [Repository(full_name="acme/api"), Repository(full_name="acme/web")])
		self.platform.hosts = {1: FakeHost(files={}, search_paths=[], fail_on=["search_code"])}
		report = await self.orchestrator.run_once()
		self.assertEqual([o.status for o in report.outcomes], ["failed", "failed"])

	async def test_run_repository_requires_binding(self) -> None:
		with self.assertRaises(NotFoundError):
			await self.orchestrator.run_repository("nobody", "nothing")

	async def test_run_repository_uses_bound_installation(self) -> None:
		self.registry.record(Installation(id=4), [Repository(full_name="acme/api")])
		host = FakeHost(files={}, search_paths=[])
		self.platform.hosts = {4: host}
		outcome = await self.orchestrator.run_repository("acme", "api")
		self.assertEqual(outcome.reason, "no_candidate")
		self.assertEqual(host.created_refs, [BRANCH])

	async def test_run_repository_reports_token_failure_as_outcome(self) -> None:
		self.registry.record(Installation(id=4), [Repository(full_name="acme/api")])
		self.platform.hosts = {4: ProviderError("token request failed")}
		outcome = await self.orchestrator.run_repository("acme", "api")
		self.assertEqual(outcome.status, "failed")
		self.assertEqual(outcome.repository, "acme/api")
		self.assertEqual(outcome.error_code, "provider_error")

	async def test_overlapping_runs_never_interleave_workflows(self) -> None:
		self.registry.record(Installation(id=1), [Repository(full_name="acme/r1"), Repository(full_name="acme/r2")])
		host = SlowSearchHost(files={}, search_paths=[])
		self.platform.hosts = {1: host}
		report, single, second = await asyncio.gather(
			self.orchestrator.run_once(),
			self.orchestrator.run_repository("acme", "r1"),
			self.orchestrator.run_once(),
		)
		self.assertEqual(host.peak, 1)
		self.assertEqual(len(report.outcomes), 2)
		self.assertEqual(len(second.outcomes), 2)
		self.assertEqual(single.reason, "no_candidate")
