#!/usr/bin/env python3

"""
    Exceptions raised by the docker_deployer. Each one carries the exit code the deployer terminates with when it
    reaches the entry point.

        0  success
        10 missing program / prereq
        20 validation error
        30 ssh/connection error
        40 remote exec error
        50 deploy/runtime error
"""

EXIT_SUCCESS = 0


class DeployError(Exception):

    exit_code = 1

    def __init__(self, message, exit_code=None):
        super().__init__(message)
        self.message = message
        if exit_code is not None:
            self.exit_code = exit_code


class PrerequisiteError(DeployError):
    exit_code = 10


class ValidationError(DeployError):
    exit_code = 20


class SSHConnectionError(DeployError):
    exit_code = 30


class RemoteExecError(DeployError):
    exit_code = 40


class DeploymentError(DeployError):
    exit_code = 50
