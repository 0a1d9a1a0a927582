from google.auth import exceptions as auth_exceptions
from google.auth.credentials import Credentials
import google.auth.transport
import logging

import requests

logger = logging.getLogger(__name__)


def mint_id_token(credentials: Credentials, request: google.auth.transport.Request) -> str:
    """
    Returns ID token from credentials, refreshing it when missing or expired

    Args:
        credentials: ID token credentials bound to target audience
        request: transport used to reach token endpoint
    """
    if not credentials.valid:
        logger.info("ID token missing or expired. Requesting new ID token")
        try:
            credentials.refresh(request)
        # Impersonated credentials post through own AuthorizedSession, requests errors are not wrapped there
        except (auth_exceptions.GoogleAuthError, requests.exceptions.RequestException) as e:
            raise GcpIdTokenError("Issue obtaining ID token") from e
    else:
        logger.debug(f"Reusing ID token valid until {credentials.expiry}")
    token = credentials.token
    if not token:
        raise GcpIdTokenError("Token endpoint returned empty ID token")
    return token


class GcpIdTokenError(Exception):
    pass
