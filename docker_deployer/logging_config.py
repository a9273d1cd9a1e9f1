#!/usr/bin/env python3

"""
    Logging setup for the docker_deployer. Every message goes to stdout and to the timestamped log file of the run
    with the same UTC timestamp prefix.
"""

import datetime
import logging
import sys
import time

LOGGER_NAME = "docker_deployer"
LOG_FORMAT = "%(asctime)s %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def log_file_name(now=None):
    """
        Builds the name of the log file of a run, deploy_YYYYmmdd_HHMMSS.log.

        :param datetime.datetime now: Time of the run, defaults to the current local time.

        :return: The log file name.
    """

    if now is None:
        now = datetime.datetime.now()
    return "deploy_{}.log".format(now.strftime("%Y%m%d_%H%M%S"))


def setup_logging(log_file=None, verbose=False):
    """
        Configures the docker_deployer logger with a console handler and, if given, a file handler.

        :param str log_file: Path of the log file, None to only log to the console.
        :param bool verbose: Log DEBUG messages (remote command output) too.

        :return: The configured logger.
    """

    level = logging.DEBUG if verbose else logging.INFO

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    logger.propagate = False

    # Avoid duplicate lines when main() runs more than once in a process
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    formatter.converter = time.gmtime

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger
