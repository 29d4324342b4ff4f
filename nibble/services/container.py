from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from nibble.adapters.types import AnalysisCapability, HostingPlatform
from nibble.services.admission_service import AdmissionGuard, AdmissionPolicy
from nibble.services.orchestrator_service import FixedDelayPacer, NightlyOrchestrator, Pacer
from nibble.services.registry_service import InstallationRegistry
from nibble.services.webhook_service import WebhookDispatcher
from nibble.settings import Settings


logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
	"""Everything the HTTP layer and the run-once command need, built once."""

	settings: Settings
	registry: InstallationRegistry
	platform: HostingPlatform
	analyzer: AnalysisCapability
	orchestrator: NightlyOrchestrator
	guard: AdmissionGuard
	webhooks: WebhookDispatcher

	async def aclose(self) -> None:
		for resource in (self.platform, self.analyzer):
			closer: Any = getattr(resource, "aclose", None) or getattr(resource, "close", None)
			if closer is not None:
				await closer()


def build_guard(settings: Settings) -> AdmissionGuard:
	return AdmissionGuard(
		AdmissionPolicy(
			max_requests=settings.rate_limit.max_requests,
			window_s=settings.rate_limit.window_s,
			max_violations=settings.rate_limit.max_violations,
			block_duration_s=settings.rate_limit.block_duration_s,
			allowed_hosts=list(settings.allowed_hosts),
		)
	)


def build_container(
	settings: Settings,
	*,
	platform: Optional[HostingPlatform] = None,
	analyzer: Optional[AnalysisCapability] = None,
	registry: Optional[InstallationRegistry] = None,
	pacer: Optional[Pacer] = None,
) -> ServiceContainer:
	if platform is None:
		from nibble.adapters.github_adapter import GitHubApp

		platform = GitHubApp(
			app_id=settings.github_app_id,
			private_key=settings.github_private_key,
			api_url=settings.github_api_url,
		)
	if analyzer is None:
		from nibble.services.analysis_service import OpenAIAnalyzer

		analyzer = OpenAIAnalyzer(
			api_key=settings.openai_api_key,
			model=settings.openai_model,
			timeout_s=settings.openai_timeout_s,
		)
	registry = registry or InstallationRegistry(settings.data_file)
	orchestrator = NightlyOrchestrator(
		registry,
		platform,
		analyzer,
		pacer=pacer or FixedDelayPacer(settings.repo_delay_s),
		confidence_threshold=settings.confidence_threshold,
		max_candidates=settings.max_candidates,
		context_lines=settings.context_lines,
	)
	logger.info("Service container ready with %d installations", len(registry.list_all()))
	return ServiceContainer(
		settings=settings,
		registry=registry,
		platform=platform,
		analyzer=analyzer,
		orchestrator=orchestrator,
		guard=build_guard(settings),
		webhooks=WebhookDispatcher(registry),
	)
