from __future__ import annotations

import hmac

from fastapi import Request

from nibble.errors import AuthenticationError, NotFoundError
from nibble.services.container import ServiceContainer


def get_container(request: Request) -> ServiceContainer:
	return request.app.state.container


def _presented_key(request: Request) -> str:
	key = request.headers.get("x-api-key", "").strip()
	if key:
		return key
	authorization = request.headers.get("authorization", "").strip()
	if authorization.lower().startswith("bearer "):
		return authorization[7:].strip()
	return ""


def require_api_key(request: Request) -> None:
	presented = _presented_key(request)
	if not presented:
		raise AuthenticationError("Missing API key.", code="missing_api_key")
	expected = get_container(request).settings.api_secret
	if not hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8")):
		raise AuthenticationError("Invalid API key.", code="invalid_api_key")


def require_debug_enabled(request: Request) -> None:
	if not get_container(request).settings.debug_endpoints:
		raise NotFoundError("Not found")
