from __future__ import annotations

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Path, Request

from nibble.response import success_response
from nibble.routers.deps import get_container, require_api_key
from nibble.schemas import ApiEnvelope
from nibble.services.container import ServiceContainer


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/trigger", tags=["trigger"], dependencies=[Depends(require_api_key)])

_NAME_PATTERN = r"^[A-Za-z0-9_.-]+$"


async def _run_batch(container: ServiceContainer) -> None:
	report = await container.orchestrator.run_once()
	logger.info("Manual nightly run finished", extra={"counts": report.counts()})


@router.post("/nightly", response_model=ApiEnvelope, status_code=202)
def trigger_nightly(
	request: Request,
	background: BackgroundTasks,
	container: ServiceContainer = Depends(get_container),
):
	logger.info("Manual nightly run requested by %s", request.client.host if request.client else "unknown")
	background.add_task(_run_batch, container)
	return success_response(request=request, data={"scheduled": True})


@router.post("/{owner}/{repo}", response_model=ApiEnvelope)
async def trigger_repository(
	request: Request,
	owner: str = Path(..., min_length=1, max_length=100, pattern=_NAME_PATTERN),
	repo: str = Path(..., min_length=1, max_length=100, pattern=_NAME_PATTERN),
	container: ServiceContainer = Depends(get_container),
):
	logger.info(
		"Manual trigger requested for %s/%s by %s",
		owner,
		repo,
		request.client.host if request.client else "unknown",
	)
	outcome = await container.orchestrator.run_repository(owner, repo)
	return success_response(
		request=request,
		data={"outcome": outcome.as_dict(include_error_message=not container.settings.hardened)},
	)
