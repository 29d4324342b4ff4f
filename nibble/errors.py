from __future__ import annotations


class NibbleError(Exception):
	status_code = 500
	default_code = "nibble_error"

	def __init__(self, message: str, *, code: str | None = None, status_code: int | None = None):
		super().__init__(message)
		self.message = message
		self.code = code or self.default_code
		if status_code is not None:
			self.status_code = status_code


class NotFoundError(NibbleError):
	"""No installation binds the requested repository."""

	status_code = 404
	default_code = "not_found"


class ValidationError(NibbleError):
	"""A suggestion is malformed or cannot be applied unambiguously."""

	status_code = 422
	default_code = "invalid_suggestion"


class ProviderError(NibbleError):
	"""A hosting-platform call failed, including a rejected write precondition."""

	status_code = 502
	default_code = "provider_error"


class AnalysisError(NibbleError):
	"""The analysis model could not be reached or timed out."""

	status_code = 502
	default_code = "analysis_provider_error"


class PersistenceError(NibbleError):
	status_code = 500
	default_code = "persistence_error"


class ConfigurationError(NibbleError):
	"""Raised at startup when a required credential or setting is missing."""

	status_code = 503
	default_code = "configuration_error"


class AuthenticationError(NibbleError):
	"""Missing or wrong API key, or a webhook signature that does not match."""

	status_code = 401
	default_code = "unauthorized"
