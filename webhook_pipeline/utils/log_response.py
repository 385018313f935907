import json
from datetime import datetime, timezone
from typing import Any, Optional

from webhook_pipeline.core.logger import logger


def _preview(value: Any, limit: int = 500) -> Any:
    text = json.dumps(value, default=str)
    if len(text) <= limit:
        return value
    return text[:limit]  # Truncate long outputs


def log_transition(
    execution_id: str,
    state: str,
    message_id: Optional[str] = None,
    output: Any = None,
    error: Optional[str] = None,
    event: str = "workflow_transition",
) -> None:
    """
    Audit log for one workflow state transition.
    Failures log at WARNING, everything else at INFO.
    """
    log_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event": event,
        "execution_id": execution_id,
        "message_id": message_id,
        "state": state,
        "output": _preview(output),
    }
    if error:
        log_data["error"] = error[:500]
        logger.warning(json.dumps(log_data, default=str))
    else:
        logger.info(json.dumps(log_data, default=str))
