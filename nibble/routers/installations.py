from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request

from nibble.response import success_response
from nibble.routers.deps import get_container, require_api_key, require_debug_enabled
from nibble.schemas import ApiEnvelope
from nibble.services.container import ServiceContainer


logger = logging.getLogger(__name__)

router = APIRouter(
	prefix="/debug",
	tags=["debug"],
	dependencies=[Depends(require_debug_enabled), Depends(require_api_key)],
)


@router.post("/refresh-installations", response_model=ApiEnvelope)
async def refresh_installations(request: Request, container: ServiceContainer = Depends(get_container)):
	logger.info("Installation refresh requested")
	report = await container.registry.reconcile_from_source(
		container.platform.list_installations,
		container.platform.list_repositories_for_installation,
	)
	return success_response(
		request=request,
		data={
			**report.as_dict(),
			"message": f"Refreshed {report.refreshed} installations",
		},
	)


@router.post("/deduplicate", response_model=ApiEnvelope)
def deduplicate(request: Request, container: ServiceContainer = Depends(get_container)):
	removed = container.registry.deduplicate()
	return success_response(request=request, data={"removed_bindings": removed})


@router.post("/validate-installations", response_model=ApiEnvelope)
async def validate_installations(request: Request, container: ServiceContainer = Depends(get_container)):
	removed = await container.registry.validate_against_source(container.platform.installation_exists)
	return success_response(request=request, data={"removed": removed})


@router.get("/installations", response_model=ApiEnvelope)
def list_installations(request: Request, container: ServiceContainer = Depends(get_container)):
	installations = [inst.to_record() for inst in container.registry.list_all()]
	return success_response(
		request=request,
		data={"installations": installations, "count": len(installations)},
	)
