import json
import os
from typing import TYPE_CHECKING, Any, Literal, Optional

from aws_lambda_powertools import Logger
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

import entities

if TYPE_CHECKING:
    from mypy_boto3_s3 import S3Client


def get_logger(service: Optional[str] = None, level: Optional[str] = None) -> Logger:
    kwargs = {
        "json_default": entities.json_default,
        "level": level or os.environ.get("LOG_LEVEL", "INFO"),
    }
    if service:
        kwargs["service"] = service
    return Logger(**kwargs)


logger = get_logger(service="config")


def load_document_from_s3(s3_client: "S3Client", bucket_name: str, s3_key: str) -> Any:  # noqa: ANN401
    """
    Load a JSON configuration document from S3.

    Args:
        s3_client: Boto3 S3 client
        bucket_name: Name of the S3 bucket
        s3_key: Key of the S3 object containing the document

    Returns:
        The decoded JSON value. An empty body is returned as an empty dict.

    Raises:
        Exception: If S3 retrieval or JSON parsing fails
    """
    try:
        logger.info(f"Loading configuration document from s3://{bucket_name}/{s3_key}")
        response = s3_client.get_object(Bucket=bucket_name, Key=s3_key)
        content = response["Body"].read().decode("utf-8")
        document = json.loads(content) if content.strip() else {}

        logger.info("Successfully loaded configuration document from S3")
        return document

    except s3_client.exceptions.NoSuchKey:
        logger.error(f"S3 object not found: s3://{bucket_name}/{s3_key}")
        raise
    except s3_client.exceptions.NoSuchBucket:
        logger.error(f"S3 bucket not found: {bucket_name}")
        raise
    except Exception as e:
        logger.error(
            f"Failed to load configuration document from S3: {e}",
            exc_info=True,
        )
        raise


class Config(BaseSettings):
    model_config = SettingsConfigDict(frozen=True)

    log_level: str = "INFO"

    # "strict" reports a change only when a value differs,
    # "attempted" flags every field write like the old subscriber did
    change_tracking: Literal["strict", "attempted"] = "strict"

    config_bucket_name: str = "samlauth-user-sync-config"
    mapping_s3_key: str = ""
    settings_s3_key: str = ""

    # Inline documents, used when the matching S3 key is empty
    user_mapping: dict = {}
    user_settings: dict = {}

    @field_validator("user_mapping", "user_settings", mode="before")
    @classmethod
    def parse_inline_document(cls, value: object) -> object:  # noqa: ANN101
        if isinstance(value, str):
            return json.loads(value) if value.strip() else {}
        return value

    @field_validator("change_tracking", mode="before")
    @classmethod
    def normalize_change_tracking(cls, value: object) -> object:  # noqa: ANN101
        return value.lower() if isinstance(value, str) else value


_config: Optional[Config] = None


def get_config() -> Config:
    global _config  # noqa: PLW0603
    if _config is None:
        _config = Config()  # type: ignore # noqa: PGH003
    return _config
