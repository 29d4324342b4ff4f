from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from nibble import constants
from nibble.errors import NibbleError
from nibble.logging_setup import setup_logging
from nibble.middleware import AdmissionMiddleware, RequestContextMiddleware
from nibble.response import error_response
from nibble.routers import health, installations, trigger, webhooks
from nibble.services.container import ServiceContainer, build_container
from nibble.settings import load_settings


logger = logging.getLogger(__name__)


def _default_container() -> ServiceContainer:
	settings = load_settings()
	setup_logging(settings.log_level)
	if settings.api_secret_generated:
		if settings.hardened:
			logger.warning("NIBBLE_API_SECRET not set, generated a random secret for this process")
		else:
			logger.warning("NIBBLE_API_SECRET not set, generated API secret: %s", settings.api_secret)
	else:
		logger.info("API authentication enabled")
	return build_container(settings)


def create_app(container: Optional[ServiceContainer] = None) -> FastAPI:
	container = container or _default_container()

	@asynccontextmanager
	async def lifespan(app: FastAPI) -> AsyncIterator[None]:
		yield
		await container.aclose()

	app = FastAPI(
		title=constants.APP_NAME,
		version=constants.APP_VERSION,
		lifespan=lifespan,
	)
	app.state.container = container
	app.state.started_at = time.monotonic()
	_register_middleware(app, container)
	_register_handlers(app, container)
	_register_routers(app)
	return app


def _register_middleware(app: FastAPI, container: ServiceContainer) -> None:
	app.add_middleware(
		AdmissionMiddleware,
		guard=container.guard,
		trust_proxy=container.settings.trust_proxy,
	)
	app.add_middleware(RequestContextMiddleware)


def _register_routers(app: FastAPI) -> None:
	app.include_router(health.router)
	app.include_router(webhooks.router)
	app.include_router(trigger.router)
	app.include_router(installations.router)


def _register_handlers(app: FastAPI, container: ServiceContainer) -> None:
	hardened = container.settings.hardened

	@app.exception_handler(NibbleError)
	async def handle_nibble_error(request: Request, exc: NibbleError) -> JSONResponse:
		message = exc.message
		if hardened and exc.status_code >= 500:
			message = "Request failed."
		if exc.status_code >= 500:
			logger.error("Request failed: %s", exc.message, extra={"error_code": exc.code})
		payload = error_response(code=exc.code, message=message, request=request)
		return JSONResponse(status_code=exc.status_code, content=payload)

	@app.exception_handler(HTTPException)
	async def handle_http_exception(request: Request, exc: HTTPException) -> JSONResponse:
		payload = error_response(
			code=f"http_{exc.status_code}",
			message=_exc_message(exc.detail),
			request=request,
		)
		return JSONResponse(status_code=exc.status_code, content=payload)

	@app.exception_handler(StarletteHTTPException)
	async def handle_starlette_http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
		payload = error_response(
			code=f"http_{exc.status_code}",
			message=_exc_message(exc.detail),
			request=request,
		)
		return JSONResponse(status_code=exc.status_code, content=payload)

	@app.exception_handler(RequestValidationError)
	async def handle_request_validation_error(
		request: Request,
		exc: RequestValidationError,
	) -> JSONResponse:
		evidence = []
		for issue in exc.errors():
			loc = ".".join(str(part) for part in issue.get("loc", []))
			msg = issue.get("msg", "Invalid request.")
			evidence.append(f"{loc}: {msg}" if loc else msg)
		payload = error_response(
			code="validation_error",
			message="Request validation failed.",
			request=request,
			evidence=evidence,
		)
		return JSONResponse(status_code=422, content=payload)

	@app.exception_handler(Exception)
	async def handle_unexpected_exception(request: Request, exc: Exception) -> JSONResponse:
		logger.exception("Unhandled error on %s", request.url.path)
		payload = error_response(
			code="internal_error",
			message="Internal server error.",
			request=request,
		)
		return JSONResponse(status_code=500, content=payload)


def _exc_message(detail: Any) -> str:
	if isinstance(detail, str):
		return detail
	if detail is None:
		return "Request failed."
	return str(detail)
