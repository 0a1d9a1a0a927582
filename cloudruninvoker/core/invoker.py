import asyncio
import logging
import threading
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlparse

import requests
from google.auth import transport
from google.auth.transport.requests import Request

from cloudruninvoker.gcpcore.gcpcredentials import load_id_token_credentials
from cloudruninvoker.gcpcore.gcpidtoken import mint_id_token

logger = logging.getLogger(__name__)

# Configuration file - key names
INVOKER_SECTION = "invoker"
TIMEOUT = "timeout"

DEFAULT_TIMEOUT = 60

AUTHORIZATION_HEADER = "Authorization"


class RequestInvoker:
    """Calls IAP / Cloud Run protected endpoints with Google-signed ID token"""

    def __init__(self, timeout: float = DEFAULT_TIMEOUT):
        """
        :param timeout: timeout in seconds for token and target HTTP requests
        """
        if not isinstance(timeout, (int, float)) or isinstance(timeout, bool) or timeout <= 0:
            raise InvokerArgumentError(f"Incorrect timeout value: '{timeout}'. Should be positive number")
        self.timeout = timeout

    async def invoke(self, credentials_path: Optional[str], target_uri: str,
                     cancel_event: asyncio.Event = None) -> requests.Response:
        """
        Obtains ID token for target_uri and sends GET request to it with Bearer authorization.
        Non-2xx responses are returned, not raised
        :param credentials_path: path to credentials .json file, None to use Application Default Credentials
        :param target_uri: HTTP(S) URI to call, used as ID token audience
        :param cancel_event: event that abandons invocation when set
        :return: response from target_uri
        """
        _validate_uri(target_uri)
        _raise_if_cancelled(cancel_event, "starting invocation")
        with requests.Session() as session:
            # Token endpoint calls share session with target request
            request = _TimeoutRequest(Request(session), self.timeout)
            credentials = await _run_stage("loading credentials", cancel_event,
                                           load_id_token_credentials, credentials_path, target_uri, request)
            token = await _run_stage("requesting ID token", cancel_event,
                                     mint_id_token, credentials, request)
            logger.info(f"Sending GET request to '{target_uri}'")
            response = await _run_stage("sending request", cancel_event,
                                        _send_get, session, target_uri, token, self.timeout)
        logger.info(f"Received response {response.status_code} from '{target_uri}'")
        return response


class _TimeoutRequest(transport.Request):
    """Applies default timeout to google-auth transport calls"""

    def __init__(self, request: Request, timeout: float):
        super().__init__()
        self.request = request
        self.timeout = timeout

    def __call__(self, url, method="GET", body=None, headers=None, timeout=None, **kwargs):
        return self.request(url, method=method, body=body, headers=headers,
                            timeout=self.timeout if timeout is None else timeout, **kwargs)


def _send_get(session: requests.Session, target_uri: str, token: str, timeout: float) -> requests.Response:
    """
    Sends GET with Bearer token
    :param session: scoped HTTP session
    :param target_uri: URI to call
    :param token: ID token
    :param timeout: request timeout in seconds
    """
    try:
        return session.get(target_uri, headers={AUTHORIZATION_HEADER: f"Bearer {token}"}, timeout=timeout)
    except requests.exceptions.RequestException as e:
        raise InvokerTransportError(f"Issue sending request to '{target_uri}'") from e


async def _run_stage(stage: str, cancel_event: Optional[asyncio.Event], func: Callable, *args) -> Any:
    """
    Runs blocking call in worker thread, abandoning it when cancel_event fires first
    :param stage: stage description for logs and errors
    :param cancel_event: cancellation event, may be None
    :param func: blocking function to run
    """
    _raise_if_cancelled(cancel_event, stage)
    logger.debug(f"Invocation stage: {stage}")
    task = _start_worker(stage, func, *args)
    if cancel_event is None:
        return await task
    waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not task.done():
            task.cancel()
    if task in done:
        return task.result()
    raise InvocationCancelledError(f"Invocation cancelled while {stage}")


def _start_worker(stage: str, func: Callable, *args) -> asyncio.Future:
    """
    Runs blocking call in daemon thread. Abandoned calls do not hold event loop or interpreter shutdown
    :param stage: stage description, used as thread name
    :param func: blocking function to run
    :return: future resolved on event loop with call result
    """
    loop = asyncio.get_running_loop()
    future = loop.create_future()

    def worker():
        try:
            result = func(*args)
        except Exception as e:
            _resolve_threadsafe(loop, future, _set_future_exception, e)
        else:
            _resolve_threadsafe(loop, future, _set_future_result, result)

    threading.Thread(target=worker, name=f"invoker-{stage.replace(' ', '-')}", daemon=True).start()
    return future


def _resolve_threadsafe(loop: asyncio.AbstractEventLoop, future: asyncio.Future, setter: Callable, value) -> None:
    try:
        loop.call_soon_threadsafe(setter, future, value)
    except RuntimeError:
        logger.debug("Event loop closed. Dropping result of abandoned call")


def _set_future_result(future: asyncio.Future, result) -> None:
    if not future.done():
        future.set_result(result)


def _set_future_exception(future: asyncio.Future, exception: Exception) -> None:
    if not future.done():
        future.set_exception(exception)


def _raise_if_cancelled(cancel_event: Optional[asyncio.Event], stage: str) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise InvocationCancelledError(f"Invocation cancelled before {stage}")


def _validate_uri(target_uri: str) -> None:
    if not isinstance(target_uri, str) or not target_uri:
        raise InvokerArgumentError("Target URI not set")
    parsed = urlparse(target_uri)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise InvokerArgumentError(f"Incorrect target URI: '{target_uri}'. Should be HTTP(S) URI")


def configure_invoker(config: Optional[Dict[str, Any]]) -> RequestInvoker:
    """
    Builds RequestInvoker from configuration file with sanity check
    :param config: invoker section from config file
    """
    if config is None:
        return RequestInvoker()
    if not isinstance(config, dict):
        raise InvokerConfigError(f"Incorrect Invoker configuration. Should be dict, is {type(config)}")
    timeout = config.get(TIMEOUT, DEFAULT_TIMEOUT)
    try:
        return RequestInvoker(timeout=timeout)
    except InvokerArgumentError as e:
        raise InvokerConfigError(f"Incorrect type of config element {TIMEOUT}") from e


async def invoke(credentials_path: Optional[str], target_uri: str,
                 cancel_event: asyncio.Event = None) -> requests.Response:
    """
    Calls target_uri with Bearer ID token using default RequestInvoker
    :param credentials_path: path to credentials .json file, None to use Application Default Credentials
    :param target_uri: HTTP(S) URI to call
    :param cancel_event: event that abandons invocation when set
    """
    return await RequestInvoker().invoke(credentials_path, target_uri, cancel_event)


class InvokerError(Exception):
    pass


class InvokerArgumentError(InvokerError):
    pass


class InvokerConfigError(InvokerError):
    pass


class InvokerTransportError(InvokerError):
    pass


class InvocationCancelledError(Exception):
    pass
