import logging
from webhook_pipeline.core.config import settings

_level = logging.getLevelName(settings.LOG_LEVEL.upper()) if settings.LOG_LEVEL else None
if not isinstance(_level, int):
    _level = logging.DEBUG if settings.DEBUG else logging.INFO

logger = logging.getLogger("webhook-pipeline")
logger.setLevel(_level)
logger.propagate = False

# One console handler, even if the module is reloaded
if not logger.handlers:
    _console = logging.StreamHandler()
    _console.setLevel(_level)
    _console.setFormatter(logging.Formatter(
        fmt="%(asctime)s | %(levelname)s | %(threadName)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S%z",
    ))
    logger.addHandler(_console)

# boto3 retries and redis reconnects are noisy at DEBUG
for _noisy in ("botocore", "boto3", "urllib3"):
    logging.getLogger(_noisy).setLevel(max(_level, logging.WARNING))
