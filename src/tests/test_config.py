# src/tests/test_config.py
import logging

import pytest
from pydantic import ValidationError as PydanticValidationError

from sfdc_bulk.core.config import Settings
from sfdc_bulk.utils.logger import setup_logging


def test_settings_defaults():
    config = Settings(_env_file=None)
    assert config.SALESFORCE_API_VERSION.startswith("v")
    assert 1 <= config.BATCH_SIZE_MAX <= 200
    assert 1 <= config.BULK_BATCH_SIZE_MAX <= 10000
    assert config.INGEST_POLL_INTERVAL > 0


def test_api_version_gets_v_prefix():
    assert Settings(_env_file=None, SALESFORCE_API_VERSION="60.0").SALESFORCE_API_VERSION == "v60.0"


@pytest.mark.parametrize("overrides", [
    {"SALESFORCE_API_VERSION": ""},
    {"BATCH_SIZE_MAX": 0},
    {"BATCH_SIZE_MAX": 201},
    {"BULK_BATCH_SIZE_MAX": 0},
    {"BULK_BATCH_SIZE_MAX": 10001},
    {"HTTP_TIMEOUT": 0},
    {"INGEST_POLL_INTERVAL": -1},
])
def test_invalid_settings_rejected(overrides):
    with pytest.raises(PydanticValidationError):
        Settings(_env_file=None, **overrides)


def test_settings_are_frozen(test_settings):
    with pytest.raises(PydanticValidationError):
        test_settings.BATCH_SIZE_MAX = 10


def test_setup_logging_is_idempotent(test_settings):
    logger = setup_logging(test_settings)
    setup_logging(test_settings)
    assert logger.name == test_settings.APP_NAME
    assert len(logger.handlers) == 1
    assert logging.getLogger("httpx").level == logging.WARNING


def test_setup_logging_with_file(tmp_path, test_settings):
    log_file = tmp_path / "client.log"
    config = test_settings.model_copy(update={"LOG_FILENAME": str(log_file)})
    logger = setup_logging(config)
    assert len(logger.handlers) == 2
    for handler in logger.handlers:
        handler.close()
    logger.handlers.clear()
