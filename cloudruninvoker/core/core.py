import argparse
import asyncio
import logging
import os
import signal

import sys
import yaml

from cloudruninvoker.core.invoker import configure_invoker, InvokerConfigError, InvokerError, \
    InvocationCancelledError, INVOKER_SECTION, TIMEOUT
from cloudruninvoker.gcpcore.gcpcredentials import GcpCredentialsError
from cloudruninvoker.gcpcore.gcpidtoken import GcpIdTokenError

logger = logging.getLogger(__name__)

CONFIG_FILE = "config.yaml"

# Configuration file - key names
CREDENTIALS_FILE_KEY = "credentials_file"
TARGET_URI_KEY = "target_uri"

# Exit codes
EXIT_ERROR = 1
EXIT_CANCELLED = 130


class InvokerCli:
    """
    Command line entry for calling protected endpoints
    """

    def __init__(self, argv=None):
        (
            self.config_file,
            self.loglevel,
            self.arg_credentials,
            self.arg_uri,
            self.arg_timeout
        ) = self.parse_args(argv)
        self.set_logging(self.loglevel)
        self.credentials_file = None
        self.target_uri = None
        self.invoker = None
        self.parse_config_file()

    def parse_args(self, argv=None):
        parser = argparse.ArgumentParser("Calls IAP / Cloud Run protected endpoint with Google ID token",
                                         formatter_class=argparse.ArgumentDefaultsHelpFormatter)
        parser.add_argument("-c", "--config", default=CONFIG_FILE, help="Configuration file")
        parser.add_argument("-l", "--loglevel", default="INFO", help="Set logging level",
                            choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"])
        parser.add_argument("-k", "--credentials", type=str,
                            help="Credentials .json file. Application Default Credentials used when not set")
        parser.add_argument("-u", "--uri", type=str, help="Target URI to call")
        parser.add_argument("-t", "--timeout", type=float, help="Request timeout in seconds")
        args = parser.parse_args(argv)
        return (
            args.config,
            args.loglevel,
            args.credentials,
            args.uri,
            args.timeout
        )

    def parse_config_file(self) -> None:
        """
        Read in and parse configuration file. Missing default config file is allowed,
        command line options take precedence over file values
        """
        config = {}
        if os.path.exists(self.config_file):
            try:
                with open(self.config_file) as fh:
                    config = yaml.safe_load(fh) or {}
            except yaml.YAMLError as e:
                raise InvokerCliConfigException(f"Error in yaml file format: '{self.config_file}'") from e
            except Exception as e:
                raise InvokerCliConfigException(f"Issue opening config file {self.config_file}") from e
            if not isinstance(config, dict):
                raise InvokerCliConfigException(f"Incorrect config file format: '{self.config_file}'. "
                                                f"Should be dict, is {type(config)}")
        elif self.config_file != CONFIG_FILE:
            raise InvokerCliConfigException(f"Config file not found: '{self.config_file}'")
        else:
            logger.debug(f"Default config file '{CONFIG_FILE}' not found. Using command line options only")
        invoker_config = config.get(INVOKER_SECTION, None)
        if self.arg_timeout is not None:
            invoker_config = dict(invoker_config or {})
            invoker_config[TIMEOUT] = self.arg_timeout
        try:
            self.invoker = configure_invoker(invoker_config)
        except InvokerConfigError as e:
            raise InvokerCliConfigException(f"Error in configuration file in section: '{INVOKER_SECTION}'") from e
        self.credentials_file = self.arg_credentials or config.get(CREDENTIALS_FILE_KEY, None)
        self.target_uri = self.arg_uri or config.get(TARGET_URI_KEY, None)
        if not self.target_uri:
            raise InvokerCliConfigException(f"Target URI not set. Use --uri or '{TARGET_URI_KEY}' config key")

    def set_logging(self, loglevel: str):
        """
        Configures logging
        :param loglevel: logging level for script
        """
        logging.basicConfig(format='%(asctime)s : %(levelname)s : %(message)s', level=loglevel)

    async def run(self):
        """
        Invokes target URI, cancelling on SIGINT/SIGTERM
        :return: response from target URI
        """
        cancel_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, cancel_event.set)
            except (NotImplementedError, RuntimeError):
                logger.debug(f"Signal handler for {sig.name} not supported on this platform")
        return await self.invoker.invoke(self.credentials_file, self.target_uri, cancel_event)


def execute(argv=None):
    try:
        cli = InvokerCli(argv)
    except InvokerCliConfigException as e:
        logger.critical(f"Error in invoker configuration\n{e}\n{e.__cause__}")
        sys.exit(EXIT_ERROR)
    try:
        response = asyncio.run(cli.run())
    except InvocationCancelledError as e:
        logger.warning(f"{e}")
        sys.exit(EXIT_CANCELLED)
    except GcpCredentialsError as e:
        logger.critical(f"Issue loading credentials\n{e}\n{e.__cause__}")
        sys.exit(EXIT_ERROR)
    except GcpIdTokenError as e:
        logger.critical(f"Issue obtaining ID token\n{e}\n{e.__cause__}")
        sys.exit(EXIT_ERROR)
    except InvokerError as e:
        logger.critical(f"Issue calling '{cli.target_uri}'\n{e}\n{e.__cause__}")
        sys.exit(EXIT_ERROR)
    if not response.ok:
        logger.warning(f"Target returned non-success status {response.status_code}")
    print(f"Response Code: {response.status_code}")
    print(f"Response Body: {response.text}")


class InvokerCliException(Exception):
    pass


class InvokerCliConfigException(InvokerCliException):
    pass
