from __future__ import annotations

import time

from fastapi import APIRouter, Request

from nibble import constants
from nibble.response import success_response
from nibble.schemas import ApiEnvelope


router = APIRouter(tags=["health"])


@router.get("/", response_model=ApiEnvelope)
def health(request: Request):
	started = getattr(request.app.state, "started_at", time.monotonic())
	return success_response(
		request=request,
		data={
			"status": f"{constants.APP_NAME} is ready to improve your code!",
			"version": constants.APP_VERSION,
			"uptime": round(time.monotonic() - started, 3),
		},
	)
