import json
import os
from unittest.mock import MagicMock

import boto3
import pytest

import config
from entities.user import UserAccount
from mapping_config import parse_mapping_document, parse_settings_document


def pytest_sessionstart(session):  # noqa: ANN201, ARG001, ANN001
    mock_env = {
        "LOG_LEVEL": "DEBUG",
        "CHANGE_TRACKING": "strict",
        "CONFIG_BUCKET_NAME": "test-config-bucket",
    }
    os.environ |= mock_env

    boto3.setup_default_session(region_name="us-east-1")


@pytest.fixture
def reset_config_cache():
    config._config = None
    yield
    config._config = None


@pytest.fixture
def mapping_document():
    return {
        "user_mapping": {
            "displayName": {"attribute": "cn", "settings": {"use_account_linking": False}},
            "mail": {"attribute": "email", "settings": {"use_account_linking": True}},
            "roles": {"attribute": "dept", "settings": {"use_account_linking": False}},
            "timezone": {"attribute": "", "settings": {"use_account_linking": False}},
        },
        "mapper": {
            "group": [
                {"name": "eng", "roles": {"developer": "developer", "editor": 0}},
                {"name": "ops", "roles": {"operator": "operator"}},
            ]
        },
    }


@pytest.fixture
def settings_document():
    return {
        "user_mapping": {"attributes": "cn\r\nemail\r\ndept\r\n"},
        "user_roles": {
            "keep": {"vip": "vip", "editor": 0},
            "default": {"roles": {"authenticated_custom": "authenticated_custom"}},
        },
        "account": {"linking": {"conjunction": "AND"}},
    }


@pytest.fixture
def mapping(mapping_document):
    return parse_mapping_document(mapping_document)


@pytest.fixture
def settings(settings_document):
    return parse_settings_document(settings_document)


@pytest.fixture
def account():
    return UserAccount()


@pytest.fixture
def mock_s3_client(mapping_document, settings_document):
    """Returns a mock S3 client serving the mapping and settings documents."""
    documents = {
        "mapping.json": mapping_document,
        "settings.json": settings_document,
    }
    mock_client = MagicMock()
    mock_client.exceptions = MagicMock()
    mock_client.exceptions.NoSuchKey = type("NoSuchKey", (Exception,), {})
    mock_client.exceptions.NoSuchBucket = type("NoSuchBucket", (Exception,), {})

    def get_object(Bucket, Key):  # noqa: N803, ANN001, ANN202, ARG001
        if Key not in documents:
            raise mock_client.exceptions.NoSuchKey(Key)
        body = json.dumps(documents[Key]).encode("utf-8")
        return {"Body": MagicMock(read=lambda: body)}

    mock_client.get_object.side_effect = get_object
    return mock_client
