from __future__ import annotations

from unittest import TestCase

from fakes import FakeClock

from nibble.services.admission_service import AdmissionGuard, AdmissionPolicy, AdmissionRequest


def _guard(clock: FakeClock, **overrides) -> AdmissionGuard:
	policy = AdmissionPolicy(
		max_requests=overrides.pop("max_requests", 3),
		window_s=overrides.pop("window_s", 60.0),
		max_violations=overrides.pop("max_violations", 2),
		block_duration_s=overrides.pop("block_duration_s", 300.0),
	)
	return AdmissionGuard(policy, clock=clock, **overrides)


def _request(**overrides) -> AdmissionRequest:
	values = {
		"key": "10.0.0.1",
		"host": "localhost:8000",
		"path": "/trigger/acme/widgets",
		"user_agent": "Mozilla/5.0",
	}
	values.update(overrides)
	return AdmissionRequest(**values)


class StaticFilterTests(TestCase):
	def setUp(self) -> None:
		self.clock = FakeClock()
		self.guard = _guard(self.clock)

	def test_unknown_host_is_not_found(self) -> None:
		decision = self.guard.check(_request(host="evil.example.com"))
		self.assertFalse(decision.allowed)
		self.assertEqual(decision.status_code, 404)
		self.assertEqual(decision.code, "not_found")

	def test_host_port_is_ignored(self) -> None:
		self.assertTrue(self.guard.check(_request(host="127.0.0.1:3000")).allowed)

	def test_scanner_paths_are_not_found(self) -> None:
		for path in ("/.env", "/wp-admin/setup.php", "/.git/config", "/backup.sql", "/package.json"):
			with self.subTest(path=path):
				decision = self.guard.check(_request(path=path))
				self.assertEqual(decision.status_code, 404)

	def test_scanner_user_agents_are_forbidden(self) -> None:
		for agent in ("curl/8.1.2", "sqlmap/1.7", "python-requests/2.31", "Nuclei - Open-source project"):
			with self.subTest(agent=agent):
				decision = self.guard.check(_request(user_agent=agent))
				self.assertEqual(decision.status_code, 403)
				self.assertEqual(decision.code, "forbidden")

	def test_static_rejection_does_not_touch_rate_memory(self) -> None:
		for _ in range(10):
			self.guard.check(_request(user_agent="nikto"))
		self.assertEqual(self.guard.tracked_keys(), 0)
		self.assertTrue(self.guard.check(_request()).allowed)


class RateLimiterTests(TestCase):
	def setUp(self) -> None:
		self.clock = FakeClock()
		self.guard = _guard(self.clock)

	def test_requests_within_limit_are_admitted(self) -> None:
		for _ in range(3):
			self.assertTrue(self.guard.check_rate("a").allowed)

	def test_overflow_is_rate_limited_with_retry_after(self) -> None:
		for _ in range(3):
			self.guard.check_rate("a")
			self.clock.advance(10)
		decision = self.guard.check_rate("a")
		self.assertFalse(decision.allowed)
		self.assertEqual(decision.status_code, 429)
		self.assertEqual(decision.code, "rate_limited")
		# Oldest request was 30 seconds ago in a 60 second window.
		self.assertEqual(decision.retry_after, 30)
		self.assertEqual(self.guard.violations("a"), 1)

	def test_window_slides(self) -> None:
		for _ in range(3):
			self.guard.check_rate("a")
		self.assertFalse(self.guard.check_rate("a").allowed)
		self.clock.advance(61)
		self.assertTrue(self.guard.check_rate("a").allowed)

	def test_escalates_to_block_then_recovers(self) -> None:
		for _ in range(3):
			self.guard.check_rate("a")
		self.assertEqual(self.guard.check_rate("a").code, "rate_limited")
		blocked = self.guard.check_rate("a")
		self.assertEqual(blocked.code, "rate_limited")
		self.assertTrue(self.guard.is_blocked("a"))

		self.clock.advance(120)
		decision = self.guard.check_rate("a")
		self.assertEqual(decision.code, "ip_blocked")
		self.assertEqual(decision.retry_after, 180)

		self.clock.advance(181)
		self.assertFalse(self.guard.is_blocked("a"))
		self.assertTrue(self.guard.check_rate("a").allowed)
		self.assertEqual(self.guard.violations("a"), 0)

	def test_blocked_requests_are_not_recorded(self) -> None:
		for _ in range(5):
			self.guard.check_rate("a")
		for _ in range(20):
			self.guard.check_rate("a")
		self.clock.advance(301)
		for _ in range(3):
			self.assertTrue(self.guard.check_rate("a").allowed)

	def test_keys_are_isolated(self) -> None:
		for _ in range(5):
			self.guard.check_rate("a")
		self.assertTrue(self.guard.is_blocked("a"))
		self.assertTrue(self.guard.check_rate("b").allowed)
		self.assertFalse(self.guard.is_blocked("b"))

	def test_sweep_drops_idle_records_only(self) -> None:
		self.guard.check_rate("idle")
		for _ in range(4):
			self.guard.check_rate("warned")
		self.clock.advance(61)
		removed = self.guard.sweep()
		self.assertEqual(removed, 1)
		self.assertEqual(self.guard.tracked_keys(), 1)
		self.assertEqual(self.guard.violations("warned"), 1)

	def test_periodic_sweep_runs_on_check(self) -> None:
		guard = _guard(self.clock, sweep_every=2)
		guard.check_rate("a")
		self.clock.advance(61)
		guard.check_rate("b")
		self.assertEqual(guard.tracked_keys(), 1)
