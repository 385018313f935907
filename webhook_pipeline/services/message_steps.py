# services/message_steps.py
"""
Pluggable workflow steps.

The workflow input is the delivery wrapper: a list of records, each
{"messageId", "body", "attributes", "receiveCount"}. Authenticity checks
look at forwarded request headers in `attributes`; the body is the raw
request text exactly as it was accepted at ingress.
"""

import base64
import binascii
import hashlib
import hmac
import json
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

import jwt

from webhook_pipeline.core.config import Settings
from webhook_pipeline.core.errors import ConfigurationError
from webhook_pipeline.core.logger import logger
from webhook_pipeline.schemas.workflow_models import StepOutcome


class MessageStep(ABC):
    """A workflow step: execute(input) -> StepOutcome. Raising counts as failure."""

    name: str = "step"

    @abstractmethod
    def execute(self, workflow_input: Any) -> StepOutcome:
        ...


def delivery_records(workflow_input: Any) -> List[Dict[str, Any]]:
    """Normalize the workflow input to a list of delivery records."""
    if isinstance(workflow_input, dict):
        return [workflow_input]
    if isinstance(workflow_input, list):
        return [r for r in workflow_input if isinstance(r, dict)]
    return []


def _attribute(record: Dict[str, Any], name: str) -> Optional[str]:
    wanted = name.lower()
    for key, value in (record.get("attributes") or {}).items():
        if key.lower() == wanted:
            return value
    return None


class CallableStep(MessageStep):
    """
    Adapt a plain function. A bool return is the success flag; any other
    return value is treated as success with that value as output.
    """

    def __init__(self, func: Callable[[Any], Any], name: Optional[str] = None):
        self._func = func
        self.name = name or getattr(func, "__name__", "callable")

    def execute(self, workflow_input: Any) -> StepOutcome:
        result = self._func(workflow_input)
        if isinstance(result, StepOutcome):
            return result
        if isinstance(result, bool):
            return StepOutcome(success=result)
        return StepOutcome(success=True, output=result)


# ============================================================================
# AUTHENTICITY CHECKS (ValidateMessage)
# ============================================================================

class AcceptAllCheck(MessageStep):
    """Log the message and accept it. No caller verification."""

    name = "accept_all"

    def execute(self, workflow_input: Any) -> StepOutcome:
        records = delivery_records(workflow_input)
        logger.info("Validating message records=%s", len(records))
        return StepOutcome(success=bool(records), output={"records": len(records)})


class HmacSignatureCheck(MessageStep):
    """
    HMAC-SHA256 over the raw body, compared with the forwarded signature
    header. Accepts a bare hex digest or the "sha256=<hex>" form.
    """

    name = "hmac_signature"

    def __init__(self, secret: str, header: str = "X-Webhook-Signature"):
        if not secret:
            raise ConfigurationError("HMAC authenticity check requires WEBHOOK_HMAC_SECRET")
        self._secret = secret.encode("utf-8")
        self.header = header

    def sign(self, body: str) -> str:
        return hmac.new(self._secret, body.encode("utf-8"), hashlib.sha256).hexdigest()

    def execute(self, workflow_input: Any) -> StepOutcome:
        records = delivery_records(workflow_input)
        if not records:
            return StepOutcome(success=False, output={"reason": "no records"})

        for record in records:
            provided = _attribute(record, self.header)
            if not provided:
                return StepOutcome(success=False, output={"reason": "missing signature", "messageId": record.get("messageId")})
            if provided.startswith("sha256="):
                provided = provided[len("sha256="):]
            expected = self.sign(record.get("body", ""))
            if not hmac.compare_digest(expected, provided.strip().lower()):
                logger.warning("HMAC signature mismatch msg_id=%s", record.get("messageId"))
                return StepOutcome(success=False, output={"reason": "signature mismatch", "messageId": record.get("messageId")})

        return StepOutcome(success=True, output={"verified": len(records)})


class BasicAuthCheck(MessageStep):
    """Forwarded `Authorization: Basic ...` must carry the configured credentials."""

    name = "basic_auth"

    def __init__(self, username: str, password: str, header: str = "Authorization"):
        if not username or password is None:
            raise ConfigurationError("Basic authenticity check requires WEBHOOK_BASIC_USERNAME and WEBHOOK_BASIC_PASSWORD")
        self._expected = f"{username}:{password}".encode("utf-8")
        self.header = header

    def _credentials_ok(self, value: Optional[str]) -> bool:
        if not value or not value.startswith("Basic "):
            return False
        try:
            decoded = base64.b64decode(value.split(" ", 1)[1], validate=True)
        except (binascii.Error, ValueError):
            return False
        return hmac.compare_digest(decoded, self._expected)

    def execute(self, workflow_input: Any) -> StepOutcome:
        records = delivery_records(workflow_input)
        if not records:
            return StepOutcome(success=False, output={"reason": "no records"})
        for record in records:
            if not self._credentials_ok(_attribute(record, self.header)):
                logger.warning("Basic auth rejected msg_id=%s", record.get("messageId"))
                return StepOutcome(success=False, output={"reason": "invalid credentials", "messageId": record.get("messageId")})
        return StepOutcome(success=True, output={"verified": len(records)})


class JwtBearerCheck(MessageStep):
    """
    Forwarded `Authorization: Bearer <jwt>` verified with the shared secret.
    Audience and issuer are enforced when configured.
    """

    name = "jwt_bearer"

    def __init__(
        self,
        secret: str,
        algorithm: str = "HS256",
        audience: Optional[str] = None,
        issuer: Optional[str] = None,
        leeway_seconds: int = 30,
        header: str = "Authorization",
    ):
        if not secret:
            raise ConfigurationError("JWT authenticity check requires JWT_SECRET_KEY")
        self._secret = secret
        self.algorithm = algorithm
        self.audience = audience
        self.issuer = issuer
        self.leeway = timedelta(seconds=leeway_seconds)
        self.header = header

    def _decode(self, token: str) -> Dict[str, Any]:
        """
        Decode and validate JWT
        """
        return jwt.decode(
            token,
            self._secret,
            algorithms=[self.algorithm],
            audience=self.audience,
            issuer=self.issuer,
            leeway=self.leeway,
            options={"verify_aud": self.audience is not None},
        )

    def execute(self, workflow_input: Any) -> StepOutcome:
        records = delivery_records(workflow_input)
        if not records:
            return StepOutcome(success=False, output={"reason": "no records"})

        subjects = []
        for record in records:
            authorization = _attribute(record, self.header)
            if not authorization or not authorization.startswith("Bearer "):
                return StepOutcome(success=False, output={"reason": "missing bearer token", "messageId": record.get("messageId")})
            try:
                claims = self._decode(authorization.split(" ", 1)[1])
            except jwt.ExpiredSignatureError:
                logger.warning("Expired token msg_id=%s", record.get("messageId"))
                return StepOutcome(success=False, output={"reason": "token expired", "messageId": record.get("messageId")})
            except jwt.InvalidTokenError as e:
                logger.warning(f"Invalid token msg_id={record.get('messageId')}: {e}")
                return StepOutcome(success=False, output={"reason": "invalid token", "messageId": record.get("messageId")})
            subjects.append(claims.get("sub"))

        return StepOutcome(success=True, output={"subjects": subjects})


def build_authenticity_check(settings: Settings) -> MessageStep:
    """Select the ValidateMessage step named by AUTHENTICITY_CHECK."""
    kind = settings.AUTHENTICITY_CHECK.lower()
    if kind == "none":
        return AcceptAllCheck()
    if kind == "hmac":
        return HmacSignatureCheck(settings.WEBHOOK_HMAC_SECRET, settings.WEBHOOK_SIGNATURE_HEADER)
    if kind == "basic":
        return BasicAuthCheck(settings.WEBHOOK_BASIC_USERNAME, settings.WEBHOOK_BASIC_PASSWORD)
    if kind == "jwt":
        return JwtBearerCheck(
            settings.JWT_SECRET_KEY,
            algorithm=settings.JWT_ALGORITHM,
            audience=settings.JWT_AUDIENCE,
            issuer=settings.JWT_ISSUER,
            leeway_seconds=settings.JWT_LEEWAY_SECONDS,
        )
    raise ConfigurationError(f"Unknown AUTHENTICITY_CHECK: {settings.AUTHENTICITY_CHECK}")


# ============================================================================
# PROCESSING HANDLERS (ProcessMessage)
# ============================================================================

class LogPayloadHandler(MessageStep):
    """Parse each record body and log it. Fails on a body that is not JSON."""

    name = "log_payload"

    def execute(self, workflow_input: Any) -> StepOutcome:
        records = delivery_records(workflow_input)
        if not records:
            return StepOutcome(success=False, output={"reason": "no records"})
        processed = []
        for record in records:
            payload = json.loads(record.get("body", ""))
            logger.info(f"Processing message msg_id={record.get('messageId')} payload={json.dumps(payload)}")
            processed.append(record.get("messageId"))
        return StepOutcome(success=True, output={"processed": processed})
