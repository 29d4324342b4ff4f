from __future__ import annotations

import os
import secrets
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

from nibble import constants
from nibble.errors import ConfigurationError


_TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class RateLimitSettings:
	max_requests: int = constants.DEFAULT_RATE_MAX_REQUESTS
	window_s: float = constants.DEFAULT_RATE_WINDOW_S
	max_violations: int = constants.DEFAULT_RATE_MAX_VIOLATIONS
	block_duration_s: float = constants.DEFAULT_RATE_BLOCK_S


@dataclass(frozen=True)
class Settings:
	github_app_id: str
	github_private_key: str
	github_webhook_secret: str
	openai_api_key: str
	api_secret: str
	api_secret_generated: bool = False
	environment: str = "development"
	debug_endpoints: bool = False
	data_file: str = constants.DEFAULT_DATA_FILE
	github_api_url: str = constants.DEFAULT_GITHUB_API_URL
	openai_model: str = constants.DEFAULT_OPENAI_MODEL
	openai_timeout_s: float = constants.DEFAULT_OPENAI_TIMEOUT_S
	repo_delay_s: float = constants.DEFAULT_REPO_DELAY_S
	confidence_threshold: float = constants.DEFAULT_CONFIDENCE_THRESHOLD
	max_candidates: int = constants.DEFAULT_MAX_CANDIDATES
	context_lines: int = constants.DEFAULT_CONTEXT_LINES
	allowed_hosts: List[str] = field(default_factory=lambda: list(constants.DEFAULT_ALLOWED_HOSTS))
	trust_proxy: bool = False
	rate_limit: RateLimitSettings = field(default_factory=RateLimitSettings)
	log_level: str = "INFO"

	@property
	def hardened(self) -> bool:
		return self.environment == "production"


def _str_env(name: str, default: str = "") -> str:
	return os.getenv(name, default).strip()


def _bool_env(name: str, default: bool = False) -> bool:
	raw = _str_env(name)
	if not raw:
		return default
	return raw.lower() in _TRUE_VALUES


def _int_env(name: str, default: int, minimum: int = 1) -> int:
	raw = _str_env(name)
	if not raw:
		return default
	try:
		value = int(raw)
	except ValueError as exc:
		raise ConfigurationError(f"{name} must be an integer.") from exc
	if value < minimum:
		raise ConfigurationError(f"{name} must be at least {minimum}.")
	return value


def _float_env(name: str, default: float, minimum: float = 0.0) -> float:
	raw = _str_env(name)
	if not raw:
		return default
	try:
		value = float(raw)
	except ValueError as exc:
		raise ConfigurationError(f"{name} must be numeric.") from exc
	if value < minimum:
		raise ConfigurationError(f"{name} must be at least {minimum}.")
	return value


def _required_env(name: str) -> str:
	value = _str_env(name)
	if not value:
		raise ConfigurationError(f"{name} is not configured.", code="missing_setting")
	return value


def load_private_key(raw: str) -> str:
	"""Accept either a PEM string or a path to a PEM file."""
	if "BEGIN" in raw and "PRIVATE KEY" in raw:
		return raw.replace("\\n", "\n")
	path = Path(raw.strip().strip('"'))
	if path.is_file():
		return path.read_text(encoding="utf-8")
	raise ConfigurationError(
		"GITHUB_PRIVATE_KEY must be a PEM string or GITHUB_PRIVATE_KEY_PATH a readable key file.",
		code="missing_setting",
	)


def _private_key_from_env() -> str:
	raw = _str_env("GITHUB_PRIVATE_KEY") or _str_env("GITHUB_PRIVATE_KEY_PATH")
	if not raw:
		raise ConfigurationError(
			"GITHUB_PRIVATE_KEY or GITHUB_PRIVATE_KEY_PATH is not configured.",
			code="missing_setting",
		)
	return load_private_key(raw)


def _allowed_hosts() -> List[str]:
	hosts = list(constants.DEFAULT_ALLOWED_HOSTS)
	raw = _str_env("NIBBLE_ALLOWED_HOSTS")
	for item in raw.split(","):
		host = item.strip().lower()
		if host and host not in hosts:
			hosts.append(host)
	server_ip = _str_env("SERVER_IP")
	if server_ip and server_ip not in hosts:
		hosts.append(server_ip)
	return hosts


def _confidence_threshold() -> float:
	value = _float_env("NIBBLE_CONFIDENCE_THRESHOLD", constants.DEFAULT_CONFIDENCE_THRESHOLD)
	if value > 1.0:
		raise ConfigurationError("NIBBLE_CONFIDENCE_THRESHOLD must be within [0, 1].")
	return value


def load_settings() -> Settings:
	api_secret = _str_env("NIBBLE_API_SECRET")
	generated = not api_secret
	if generated:
		api_secret = secrets.token_hex(32)
	return Settings(
		github_app_id=_required_env("GITHUB_APP_ID"),
		github_private_key=_private_key_from_env(),
		github_webhook_secret=_required_env("GITHUB_WEBHOOK_SECRET"),
		openai_api_key=_required_env("OPENAI_API_KEY"),
		api_secret=api_secret,
		api_secret_generated=generated,
		environment=_str_env("NIBBLE_ENV", "development").lower() or "development",
		debug_endpoints=_bool_env("ENABLE_DEBUG_ENDPOINTS"),
		data_file=_str_env("NIBBLE_DATA_FILE", constants.DEFAULT_DATA_FILE) or constants.DEFAULT_DATA_FILE,
		github_api_url=_str_env("GITHUB_API_URL", constants.DEFAULT_GITHUB_API_URL) or constants.DEFAULT_GITHUB_API_URL,
		openai_model=_str_env("NIBBLE_OPENAI_MODEL", constants.DEFAULT_OPENAI_MODEL) or constants.DEFAULT_OPENAI_MODEL,
		openai_timeout_s=_float_env("NIBBLE_OPENAI_TIMEOUT_S", constants.DEFAULT_OPENAI_TIMEOUT_S, minimum=1.0),
		repo_delay_s=_float_env("NIBBLE_REPO_DELAY_S", constants.DEFAULT_REPO_DELAY_S),
		confidence_threshold=_confidence_threshold(),
		max_candidates=_int_env("NIBBLE_MAX_CANDIDATES", constants.DEFAULT_MAX_CANDIDATES),
		context_lines=_int_env("NIBBLE_CONTEXT_LINES", constants.DEFAULT_CONTEXT_LINES),
		allowed_hosts=_allowed_hosts(),
		trust_proxy=_bool_env("NIBBLE_TRUST_PROXY"),
		rate_limit=RateLimitSettings(
			max_requests=_int_env("NIBBLE_RATE_MAX_REQUESTS", constants.DEFAULT_RATE_MAX_REQUESTS),
			window_s=_float_env("NIBBLE_RATE_WINDOW_S", constants.DEFAULT_RATE_WINDOW_S, minimum=1.0),
			max_violations=_int_env("NIBBLE_RATE_MAX_VIOLATIONS", constants.DEFAULT_RATE_MAX_VIOLATIONS),
			block_duration_s=_float_env("NIBBLE_RATE_BLOCK_S", constants.DEFAULT_RATE_BLOCK_S, minimum=1.0),
		),
		log_level=_str_env("LOG_LEVEL", "INFO").upper() or "INFO",
	)
