#!/usr/bin/env python3

"""
    Everything the deployer does on the local machine: checking the programs it needs, cloning or updating the
    repository with the personal access token and pushing the clone to the server with rsync.
"""

import base64
import logging
import os
import shlex
import shutil
import subprocess

from docker_deployer.errors import PrerequisiteError, ValidationError

logger = logging.getLogger(__name__)

REQUIRED_COMMANDS = ["git"]
RSYNC_COMMANDS = ["rsync", "ssh"]

COMPOSE_FILES = ["docker-compose.yml", "docker-compose.yaml"]
DOCKERFILE = "Dockerfile"

REPO_DIR_NAME = "repo"
RSYNC_OPTIONS = ["-az", "--delete"]


def check_prerequisites(which=shutil.which):
    """
        Makes sure the programs the deployer runs locally are installed.

        :return: True if rsync (and the ssh it runs over) are available for the transfer, False if the SFTP fallback
                 has to be used.
    """

    for cmd in REQUIRED_COMMANDS:
        if which(cmd) is None:
            raise PrerequisiteError("Required command not found: {}".format(cmd))

    missing = [cmd for cmd in RSYNC_COMMANDS if which(cmd) is None]
    if missing:
        logger.warning("%s not found, file transfer will use the SFTP fallback", ", ".join(missing))
        return False

    return True


def build_git_auth_env(git_url, token, environ=None):
    """
        Builds the environment git runs with. For https repositories with a token, an Authorization header is passed
        through the GIT_CONFIG_* variables so the token never shows up in the URL, in the process arguments or in
        .git/config of the clone.

        :param str git_url: The repository URL as given by the operator.
        :param str token: The personal access token, may be empty.
        :param dict environ: Base environment, defaults to os.environ.

        :return: The environment dictionary.
    """

    env = dict(os.environ if environ is None else environ)
    env["GIT_TERMINAL_PROMPT"] = "0"

    if token and git_url.startswith("https://"):
        credentials = base64.b64encode("x-access-token:{}".format(token).encode("utf-8")).decode("ascii")

        index = int(env.get("GIT_CONFIG_COUNT", "0") or "0")
        env["GIT_CONFIG_KEY_{}".format(index)] = "http.extraHeader"
        env["GIT_CONFIG_VALUE_{}".format(index)] = "Authorization: Basic {}".format(credentials)
        env["GIT_CONFIG_COUNT"] = str(index + 1)

    return env


def clone_or_update_repo(git_url, branch, work_dir, env, runner=subprocess.run):
    """
        Clones the branch of the repository into <work_dir>/repo, or updates it if the clone already exists. Updates
        are best-effort, each failing git step is logged and the next one is tried.

        :return: The path of the clone.
    """

    repo_dir = os.path.join(work_dir, REPO_DIR_NAME)

    if os.path.isdir(repo_dir):

        for args in (["git", "fetch", "--all"], ["git", "checkout", branch], ["git", "pull", "origin", branch]):
            result = runner(args, cwd=repo_dir, env=env, stdout=subprocess.PIPE, stderr=subprocess.STDOUT)
            if result.returncode != 0:
                logger.warning("'%s' failed with exit code %d", " ".join(args), result.returncode)

    else:

        args = ["git", "clone", "--branch", branch, "--single-branch", git_url, REPO_DIR_NAME]
        result = runner(args, cwd=work_dir, env=env, stdout=subprocess.PIPE, stderr=subprocess.STDOUT)
        if result.returncode != 0:
            output = result.stdout.decode("utf-8", errors="replace").strip() if result.stdout else ""
            logger.debug("git clone output: %s", output)
            raise ValidationError("git clone failed")

    return repo_dir


def find_compose_file(repo_dir):

    for compose_file in COMPOSE_FILES:
        if os.path.isfile(os.path.join(repo_dir, compose_file)):
            return compose_file
    return None


def verify_deployable(repo_dir):
    """
        The repository has to be buildable by docker, either with a Dockerfile or a compose file.
    """

    if not os.path.isfile(os.path.join(repo_dir, DOCKERFILE)) and find_compose_file(repo_dir) is None:
        raise ValidationError("Neither Dockerfile nor docker-compose.yml found in repo")


def rsync_to_server(repo_dir, ssh_user, ssh_host, ssh_key, server_directory, runner=subprocess.run):
    """
        Pushes the clone to the server with rsync, deleting anything on the server that is not in the clone.

        :return: T/F based on whether rsync succeeded.
    """

    ssh_command = "ssh -i {} -o BatchMode=yes -o StrictHostKeyChecking=accept-new".format(shlex.quote(ssh_key))
    args = ["rsync", "-e", ssh_command] + RSYNC_OPTIONS + [
        repo_dir.rstrip(os.sep) + "/",
        "{}@{}:{}/".format(ssh_user, ssh_host, server_directory.rstrip("/"))
    ]

    logger.info("Using rsync for deployment...")
    try:
        result = runner(args, stdout=subprocess.PIPE, stderr=subprocess.STDOUT)
    except OSError as e:
        logger.warning("Could not run rsync: %s", e)
        return False

    if result.returncode != 0:
        output = result.stdout.decode("utf-8", errors="replace").strip() if result.stdout else ""
        logger.warning("Rsync failed with exit code %d: %s", result.returncode, output)
        return False

    return True
