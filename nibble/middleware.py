from __future__ import annotations

import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from nibble import constants
from nibble.response import error_response
from nibble.services.admission_service import AdmissionGuard, AdmissionRequest


class RequestContextMiddleware(BaseHTTPMiddleware):
	async def dispatch(self, request: Request, call_next) -> Response:
		request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)
		request.state.request_id = request_id
		start = time.perf_counter()
		response = await call_next(request)
		process_time = time.perf_counter() - start
		response.headers["X-Request-ID"] = request_id
		response.headers["X-Process-Time"] = f"{process_time:.6f}"
		return response


def caller_key(request: Request, *, trust_proxy: bool = False) -> str:
	if trust_proxy:
		forwarded = request.headers.get("X-Forwarded-For", "")
		first = forwarded.split(",")[0].strip()
		if first:
			return first
	if request.client and request.client.host:
		return request.client.host
	return "unknown"


def _is_protected(path: str) -> bool:
	return any(
		path == prefix or path.startswith(prefix + "/")
		for prefix in constants.PROTECTED_PATH_PREFIXES
	)


class AdmissionMiddleware(BaseHTTPMiddleware):
	"""Static filters on every request, rate accounting on trigger and debug paths."""

	def __init__(self, app, guard: AdmissionGuard, *, trust_proxy: bool = False):
		super().__init__(app)
		self.guard = guard
		self.trust_proxy = trust_proxy

	async def dispatch(self, request: Request, call_next) -> Response:
		admission = AdmissionRequest(
			key=caller_key(request, trust_proxy=self.trust_proxy),
			host=request.headers.get("host", ""),
			path=request.url.path,
			user_agent=request.headers.get("user-agent", ""),
		)
		decision = self.guard.check_static(admission)
		if decision.allowed and _is_protected(request.url.path):
			decision = self.guard.check_rate(admission.key)
		if decision.allowed:
			return await call_next(request)

		headers = {}
		if decision.retry_after is not None:
			headers["Retry-After"] = str(decision.retry_after)
		payload = error_response(
			code=decision.code or "rejected",
			message=decision.message,
			request=request,
			retry_after=decision.retry_after,
		)
		return JSONResponse(status_code=decision.status_code, content=payload, headers=headers)
