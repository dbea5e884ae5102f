import functools
from typing import Any

from pydantic import ValidationError

import config


class ConfigurationError(Exception):
    ...


class MappingConfigurationError(ConfigurationError):
    ...


class AccountMutationError(Exception):
    """Raised by an account when it rejects a field or role write."""


logger = config.get_logger(service="errors")


def error_response(e: Exception) -> dict[str, Any]:
    if isinstance(e, ValidationError):
        status_code = 400
        text = "Invalid user sync event payload."
    elif isinstance(e, AccountMutationError):
        status_code = 422
        text = f"The account rejected a mutation: {e}"
    elif isinstance(e, ConfigurationError):
        status_code = 500
        text = "User mapping configuration is invalid. Check the logs for more details."
    else:
        status_code = 500
        text = "User sync encountered an unexpected error. Refer to the logs for more details."
    return {
        "statusCode": status_code,
        "body": {"error": text, "success": False},
    }


def handle_errors(fn):  # noqa: ANN001, ANN201
    # The sync is aborted on the first failure; the caller owns rollback of whatever was already applied.
    @functools.wraps(fn)
    def wrapper(*args, **kwargs):  # noqa: ANN002, ANN003, ANN202
        try:
            return fn(*args, **kwargs)
        except Exception as e:
            logger.exception("An error occurred:", exc_info=e)
            return error_response(e)

    return wrapper
