from __future__ import annotations

import hashlib
import hmac
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from nibble import constants
from nibble.errors import AuthenticationError, ConfigurationError, NibbleError
from nibble.response import now_iso
from nibble.schemas import (
	Installation,
	InstallationEvent,
	InstallationRepositoriesEvent,
	PushEvent,
)
from nibble.services.registry_service import InstallationRegistry


logger = logging.getLogger(__name__)


def verify_signature(secret: str, signature: Optional[str], body: bytes) -> None:
	if not secret:
		raise ConfigurationError("Webhook secret is not configured on the server.")
	if not signature or not signature.startswith("sha256="):
		raise AuthenticationError("Missing webhook signature.", code="invalid_signature")
	digest = hmac.new(secret.encode("utf-8"), msg=body, digestmod=hashlib.sha256).hexdigest()
	if not hmac.compare_digest(f"sha256={digest}", signature):
		raise AuthenticationError("Invalid webhook signature.", code="invalid_signature")


def _created_at(value: Optional[Union[str, int]]) -> str:
	if isinstance(value, int):
		return datetime.fromtimestamp(value, tz=timezone.utc).isoformat().replace("+00:00", "Z")
	return value or now_iso()


class WebhookDispatcher:
	"""Applies GitHub webhook events to the installation registry."""

	def __init__(self, registry: InstallationRegistry):
		self.registry = registry
		self._handlers: Dict[str, Callable[[Dict[str, Any]], bool]] = {
			"installation": self._on_installation,
			"installation_repositories": self._on_installation_repositories,
			"push": self._on_push,
		}

	def dispatch(self, event: str, payload: Dict[str, Any]) -> bool:
		"""Returns True when the event changed or was applied to the registry."""
		handler = self._handlers.get(event)
		if handler is None:
			logger.debug("Ignoring webhook event %s", event)
			return False
		try:
			return handler(payload)
		except PydanticValidationError as exc:
			raise NibbleError(
				f"Malformed {event} payload.",
				code="invalid_payload",
				status_code=400,
			) from exc

	def _on_installation(self, payload: Dict[str, Any]) -> bool:
		event = InstallationEvent.model_validate(payload)
		installation = event.installation
		if event.action == "created":
			logger.info("Nibble installed on %s", installation.account.name)
			repositories = event.repositories or installation.repositories
			self.registry.record(
				Installation(
					id=installation.id,
					account=installation.account.name,
					created_at=_created_at(installation.created_at),
				),
				repositories,
			)
			return True
		if event.action == "deleted":
			logger.info("Nibble uninstalled from %s", installation.account.name)
			return self.registry.remove(installation.id)
		return False

	def _on_installation_repositories(self, payload: Dict[str, Any]) -> bool:
		event = InstallationRepositoriesEvent.model_validate(payload)
		if event.action != "added":
			return False
		changed = False
		for repository in event.repositories_added:
			changed = self.registry.add_repository(
				event.installation.id,
				repository,
				account=event.installation.account.name,
			) or changed
		return changed

	def _on_push(self, payload: Dict[str, Any]) -> bool:
		event = PushEvent.model_validate(payload)
		if event.ref not in constants.TRIGGER_BRANCHES or event.installation is None:
			return False
		logger.info("Push detected to %s", event.repository.full_name)
		self.registry.add_repository(
			event.installation.id,
			event.repository.as_repository(),
			account=event.repository.owner.name,
		)
		logger.info("Scheduled %s for daily nibbles", event.repository.full_name)
		return True
