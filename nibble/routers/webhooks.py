from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, Request

from nibble.errors import NibbleError
from nibble.response import success_response
from nibble.routers.deps import get_container
from nibble.schemas import ApiEnvelope
from nibble.services.container import ServiceContainer
from nibble.services.webhook_service import verify_signature


logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])


@router.post("/webhooks", response_model=ApiEnvelope)
async def receive_webhook(request: Request, container: ServiceContainer = Depends(get_container)):
	body = await request.body()
	verify_signature(
		container.settings.github_webhook_secret,
		request.headers.get("x-hub-signature-256"),
		body,
	)
	event = request.headers.get("x-github-event", "")
	delivery = request.headers.get("x-github-delivery", "")
	try:
		payload = json.loads(body)
	except (json.JSONDecodeError, UnicodeDecodeError) as exc:
		raise NibbleError("Webhook body is not valid JSON.", code="invalid_payload", status_code=400) from exc
	if not isinstance(payload, dict):
		raise NibbleError("Webhook body must be a JSON object.", code="invalid_payload", status_code=400)

	handled = container.webhooks.dispatch(event, payload)
	logger.info("Webhook %s processed", event, extra={"delivery": delivery, "handled": handled})
	return success_response(request=request, data={"event": event, "handled": handled})
