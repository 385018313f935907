# services/ingress_gateway.py
"""
Edge handler: validate a request body and enqueue it.

Transport-agnostic; the FastAPI router passes in the raw body and headers
and renders the returned GatewayResponse. One enqueue attempt per accepted
request, and 200 only after the queue acknowledged the write.
"""

import json
from typing import Any, Dict, Iterable, Mapping, Optional

from pydantic import BaseModel, Field

from webhook_pipeline.core.logger import logger
from webhook_pipeline.integrations.queue_base import DurableQueue
from webhook_pipeline.schemas.webhook_models import AcceptedResponse, FieldError, RejectedResponse
from webhook_pipeline.services.schema_validator import validate_payload

CORS_HEADERS = {
    "Access-Control-Allow-Headers": "Content-Type",
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "*",
}


class GatewayResponse(BaseModel):
    status_code: int
    body: Dict[str, Any]
    headers: Dict[str, str] = Field(default_factory=dict)
    message_id: Optional[str] = None


class IngressGateway:

    def __init__(self, queue: DurableQueue, forwarded_headers: Iterable[str] = ()):
        self.queue = queue
        self.forwarded_headers = list(forwarded_headers)

    def _attributes(self, headers: Mapping[str, str]) -> Dict[str, str]:
        lowered = {k.lower(): v for k, v in headers.items()}
        attributes = {}
        for name in self.forwarded_headers:
            value = lowered.get(name.lower())
            if value:
                attributes[name] = value
        return attributes

    @staticmethod
    def _reject(errors) -> GatewayResponse:
        return GatewayResponse(
            status_code=400,
            body=RejectedResponse(errors=errors).model_dump(),
            headers={"Content-Type": "application/json"},
        )

    def handle(self, raw_body: bytes, headers: Optional[Mapping[str, str]] = None) -> GatewayResponse:
        try:
            text = raw_body.decode("utf-8")
            parsed = json.loads(text)
        except (ValueError, RecursionError) as e:
            # ValueError covers UnicodeDecodeError, JSONDecodeError and oversized integers
            logger.info(f"Rejected unparseable body: {e}")
            return self._reject([FieldError(path="", message=f"Malformed JSON body: {e}")])

        result = validate_payload(parsed)
        if not result.ok:
            logger.info(
                "Rejected payload errors=%s",
                json.dumps([err.model_dump() for err in result.errors])
            )
            return self._reject(result.errors)

        try:
            message_id = self.queue.enqueue(text, self._attributes(headers or {}))
        except Exception as e:
            logger.exception(f"Enqueue failed, payload not accepted: {e}")
            return GatewayResponse(
                status_code=500,
                body={"message": "Failed to enqueue payload"},
                headers={"Content-Type": "application/json"},
            )

        logger.info("Accepted payload msg_id=%s queue=%s", message_id, self.queue.name)
        return GatewayResponse(
            status_code=200,
            body=AcceptedResponse().model_dump(),
            headers=dict(CORS_HEADERS),
            message_id=message_id,
        )
