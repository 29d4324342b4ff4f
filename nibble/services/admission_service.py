from __future__ import annotations

import logging
import math
import re
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, Iterable, List, Literal, Optional, Pattern

from nibble import constants


logger = logging.getLogger(__name__)

RejectCode = Literal["not_found", "forbidden", "rate_limited", "ip_blocked"]


@dataclass(frozen=True)
class AdmissionPolicy:
	max_requests: int = constants.DEFAULT_RATE_MAX_REQUESTS
	window_s: float = constants.DEFAULT_RATE_WINDOW_S
	max_violations: int = constants.DEFAULT_RATE_MAX_VIOLATIONS
	block_duration_s: float = constants.DEFAULT_RATE_BLOCK_S
	allowed_hosts: List[str] = field(default_factory=lambda: list(constants.DEFAULT_ALLOWED_HOSTS))
	blocked_path_patterns: List[str] = field(default_factory=lambda: list(constants.BLOCKED_PATH_PATTERNS))
	blocked_agent_patterns: List[str] = field(default_factory=lambda: list(constants.BLOCKED_AGENT_PATTERNS))


@dataclass(frozen=True)
class AdmissionRequest:
	key: str
	host: str = ""
	path: str = "/"
	user_agent: str = ""


@dataclass(frozen=True)
class AdmissionDecision:
	allowed: bool
	status_code: int = 200
	code: Optional[RejectCode] = None
	message: str = ""
	retry_after: Optional[int] = None

	@classmethod
	def admit(cls) -> "AdmissionDecision":
		return cls(allowed=True)


@dataclass
class AdmissionRecord:
	timestamps: Deque[float] = field(default_factory=deque)
	violations: int = 0
	blocked_until: Optional[float] = None


def _compile(patterns: Iterable[str]) -> List[Pattern[str]]:
	return [re.compile(pattern, re.IGNORECASE) for pattern in patterns]


def _strip_port(host: str) -> str:
	host = host.strip().lower()
	if host.startswith("["):
		end = host.find("]")
		return host[: end + 1] if end != -1 else host
	if host.count(":") == 1:
		return host.split(":", 1)[0]
	return host


class AdmissionGuard:
	"""Static request filters plus a sliding-window limiter with escalating blocks.

	Each caller key moves through Normal -> Warned(v) -> Blocked(until) -> Normal.
	Keys never share state, and expired state is dropped lazily.
	"""

	def __init__(
		self,
		policy: Optional[AdmissionPolicy] = None,
		*,
		clock: Callable[[], float] = time.monotonic,
		sweep_every: int = 500,
	):
		self.policy = policy or AdmissionPolicy()
		self._clock = clock
		self._sweep_every = max(sweep_every, 1)
		self._checks = 0
		self._records: Dict[str, AdmissionRecord] = {}
		self._allowed_hosts = {_strip_port(host) for host in self.policy.allowed_hosts}
		self._path_patterns = _compile(self.policy.blocked_path_patterns)
		self._agent_patterns = _compile(self.policy.blocked_agent_patterns)

	def check(self, request: AdmissionRequest) -> AdmissionDecision:
		decision = self.check_static(request)
		if not decision.allowed:
			return decision
		return self.check_rate(request.key)

	def check_static(self, request: AdmissionRequest) -> AdmissionDecision:
		host = _strip_port(request.host)
		if host not in self._allowed_hosts:
			self._log_rejection(request, "invalid_host")
			return AdmissionDecision(allowed=False, status_code=404, code="not_found", message="Not found")

		path = request.path.lower()
		if any(pattern.search(path) for pattern in self._path_patterns):
			self._log_rejection(request, "suspicious_url")
			return AdmissionDecision(allowed=False, status_code=404, code="not_found", message="Not found")

		if any(pattern.search(request.user_agent) for pattern in self._agent_patterns):
			self._log_rejection(request, "suspicious_user_agent")
			return AdmissionDecision(allowed=False, status_code=403, code="forbidden", message="Forbidden")

		return AdmissionDecision.admit()

	def check_rate(self, key: str) -> AdmissionDecision:
		now = self._clock()
		self._checks += 1
		if self._checks % self._sweep_every == 0:
			self.sweep(now)

		record = self._records.get(key)
		if record is None:
			record = AdmissionRecord()
			self._records[key] = record

		if record.blocked_until is not None:
			if now < record.blocked_until:
				logger.warning(
					"Request from blocked caller",
					extra={"ip": key, "type": "blocked_ip"},
				)
				return AdmissionDecision(
					allowed=False,
					status_code=429,
					code="ip_blocked",
					message="IP temporarily blocked",
					retry_after=max(math.ceil(record.blocked_until - now), 1),
				)
			record.blocked_until = None
			record.violations = 0

		window_start = now - self.policy.window_s
		while record.timestamps and record.timestamps[0] <= window_start:
			record.timestamps.popleft()

		if len(record.timestamps) >= self.policy.max_requests:
			record.violations += 1
			logger.warning(
				"Rate limit exceeded",
				extra={
					"ip": key,
					"requests": len(record.timestamps),
					"violations": record.violations,
					"type": "rate_limit_exceeded",
				},
			)
			if record.violations >= self.policy.max_violations:
				record.blocked_until = now + self.policy.block_duration_s
				logger.warning(
					"Caller blocked after repeated violations",
					extra={
						"ip": key,
						"violations": record.violations,
						"blocked_for_s": self.policy.block_duration_s,
						"type": "ip_blocked",
					},
				)
			retry_after = record.timestamps[0] + self.policy.window_s - now
			return AdmissionDecision(
				allowed=False,
				status_code=429,
				code="rate_limited",
				message="Too many requests",
				retry_after=max(math.ceil(retry_after), 1),
			)

		record.timestamps.append(now)
		return AdmissionDecision.admit()

	def sweep(self, now: Optional[float] = None) -> int:
		"""Drop records with an empty window, no active block and no violations."""
		current = self._clock() if now is None else now
		window_start = current - self.policy.window_s
		stale: List[str] = []
		for key, record in self._records.items():
			while record.timestamps and record.timestamps[0] <= window_start:
				record.timestamps.popleft()
			if record.blocked_until is not None and current >= record.blocked_until:
				record.blocked_until = None
				record.violations = 0
			if not record.timestamps and record.blocked_until is None and record.violations == 0:
				stale.append(key)
		for key in stale:
			self._records.pop(key, None)
		return len(stale)

	def violations(self, key: str) -> int:
		record = self._records.get(key)
		return record.violations if record else 0

	def is_blocked(self, key: str) -> bool:
		record = self._records.get(key)
		if record is None or record.blocked_until is None:
			return False
		return self._clock() < record.blocked_until

	def tracked_keys(self) -> int:
		return len(self._records)

	def _log_rejection(self, request: AdmissionRequest, kind: str) -> None:
		logger.warning(
			"Blocked suspicious request",
			extra={
				"ip": request.key,
				"url": request.path,
				"host": request.host,
				"user_agent": request.user_agent,
				"type": kind,
			},
		)
