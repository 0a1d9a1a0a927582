import json
import logging
from os import getenv
from typing import Optional

import google.auth
from google.auth import exceptions as auth_exceptions
from google.auth import impersonated_credentials
from google.auth.credentials import Credentials
from google.oauth2 import id_token
from google.oauth2 import service_account

logger = logging.getLogger(__name__)

CREDENTIALS_ENV = "GOOGLE_APPLICATION_CREDENTIALS"

# Credentials file - "type" field values
SERVICE_ACCOUNT_TYPE = "service_account"
IMPERSONATED_SERVICE_ACCOUNT_TYPE = "impersonated_service_account"


def load_id_token_credentials(credentials_path: Optional[str],
                              audience: str,
                              request=None) -> Credentials:
    """
    Builds credentials that issue ID tokens for given audience
    :param credentials_path: path to credentials .json file, None to use Application Default Credentials
    :param audience: target audience the ID tokens are bound to
    :param request: transport used only for Application Default Credentials discovery
    :return: ID token credentials, not yet refreshed
    """
    if credentials_path is None:
        return _load_default_credentials(audience, request)
    if not credentials_path:
        raise GcpCredentialsError("Empty credentials file path")
    logger.info(f"Reading credentials from file '{credentials_path}'")
    try:
        with open(credentials_path, encoding="utf-8") as fh:
            info = json.load(fh)
    except ValueError as e:
        raise GcpCredentialsError(f"Credentials file is not valid UTF-8 JSON: '{credentials_path}'") from e
    except OSError as e:
        raise GcpCredentialsError(f"Issue opening credentials file '{credentials_path}'") from e
    if not isinstance(info, dict):
        raise GcpCredentialsError(f"Incorrect credentials file content. Should be dict, is {type(info)}")
    credentials_type = info.get("type", None)
    if credentials_type == SERVICE_ACCOUNT_TYPE:
        try:
            credentials = service_account.IDTokenCredentials.from_service_account_info(
                info, target_audience=audience)
        except (ValueError, KeyError) as e:
            raise GcpCredentialsError(f"Malformed service account file '{credentials_path}'") from e
        logger.info(f"Loaded service account: {credentials.service_account_email}")
        return credentials
    if credentials_type == IMPERSONATED_SERVICE_ACCOUNT_TYPE:
        try:
            source_credentials, _ = google.auth.load_credentials_from_file(credentials_path)
        except auth_exceptions.DefaultCredentialsError as e:
            raise GcpCredentialsError("Malformed impersonated service account file "
                                      f"'{credentials_path}'") from e
        logger.info("Loaded impersonated service account credentials")
        return impersonated_credentials.IDTokenCredentials(source_credentials,
                                                           target_audience=audience,
                                                           include_email=True)
    raise GcpCredentialsError(f"Unsupported credentials type '{credentials_type}' in file '{credentials_path}'. "
                              f"Supported: {[SERVICE_ACCOUNT_TYPE, IMPERSONATED_SERVICE_ACCOUNT_TYPE]}")


def _load_default_credentials(audience: str, request) -> Credentials:
    """
    Resolves ID token credentials from env var or metadata server
    :param audience: target audience the ID tokens are bound to
    :param request: transport used to reach the metadata server
    """
    if getenv(CREDENTIALS_ENV):
        logger.info(f"Env var '{CREDENTIALS_ENV}' set. Authenticating using credentials file")
    else:
        logger.info(f"Env var '{CREDENTIALS_ENV}' not set. Authenticating using metadata server")
    try:
        return id_token.fetch_id_token_credentials(audience, request=request)
    except auth_exceptions.DefaultCredentialsError as e:
        raise GcpCredentialsError("Unable to find default credentials for ID token") from e


class GcpCredentialsError(Exception):
    pass
