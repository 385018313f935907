# core/aws_client.py
"""
AWS client factory to ensure proper credential handling.
Credentials come from settings (which loads .env) and fall back to the
default boto3 chain when unset.
"""
import os

import boto3
from botocore.config import Config

from webhook_pipeline.core.config import Settings
from webhook_pipeline.core.logger import logger


def get_sqs_client(settings: Settings):
    """Get SQS client with proper credentials."""
    try:
        config = Config(
            connect_timeout=5,
            read_timeout=25,  # long polling waits up to 20s
            retries={"max_attempts": 3, "mode": "standard"}
        )

        aws_access_key_id = settings.AWS_ACCESS_KEY_ID or os.getenv('AWS_ACCESS_KEY_ID')
        aws_secret_access_key = settings.AWS_SECRET_ACCESS_KEY or os.getenv('AWS_SECRET_ACCESS_KEY')
        aws_session_token = settings.AWS_SESSION_TOKEN or os.getenv('AWS_SESSION_TOKEN')

        client = boto3.client(
            "sqs",
            region_name=settings.SQS_REGION,
            aws_access_key_id=aws_access_key_id,
            aws_secret_access_key=aws_secret_access_key,
            aws_session_token=aws_session_token,  # Optional for temporary credentials
            config=config
        )
        logger.info("SQS client initialized region=%s", settings.SQS_REGION)
        return client
    except Exception as e:
        logger.error(f"Failed to initialize SQS client: {str(e)}")
        raise


def validate_aws_credentials(settings: Settings) -> bool:
    """Check that AWS credentials are configured somewhere boto3 can find them."""
    if settings.AWS_ACCESS_KEY_ID and settings.AWS_SECRET_ACCESS_KEY:
        return True
    if boto3.Session().get_credentials() is not None:
        return True

    logger.warning("Missing AWS credentials in settings, environment and boto3 default chain")
    return False
