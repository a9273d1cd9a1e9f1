#!/usr/bin/env python3

import getpass
import json
import os
import re

from schema import And, Optional, Or, Schema, SchemaError, Use

from docker_deployer.errors import ValidationError

REPOSITORY_CFG_GROUP = "Repository"
URL_CFG_KEY = "URL"
BRANCH_CFG_KEY = "Branch"

SSH_CONNECTION_CFG_GROUP = "SSH Connection"
HOST_CFG_KEY = "Host"
USER_CFG_KEY = "User"
KEY_CFG_KEY = "Key"

DEPLOYMENT_CFG_GROUP = "Deployment"
APP_PORT_CFG_KEY = "App Port"
REMOTE_BASE_CFG_KEY = "Remote Base"

TOKEN_ENV_VAR = "DEPLOY_GIT_TOKEN"

DEFAULT_BRANCH = "main"
DEFAULT_REMOTE_BASE = "~/deploy_app"

CFG_FILE_VALIDATION = Schema({
    Optional(REPOSITORY_CFG_GROUP): {
        Optional(URL_CFG_KEY): str,
        Optional(BRANCH_CFG_KEY): str
    },
    Optional(SSH_CONNECTION_CFG_GROUP): {
        Optional(HOST_CFG_KEY): str,
        Optional(USER_CFG_KEY): str,
        Optional(KEY_CFG_KEY): str
    },
    Optional(DEPLOYMENT_CFG_GROUP): {
        Optional(APP_PORT_CFG_KEY): Or(int, str),
        Optional(REMOTE_BASE_CFG_KEY): str
    }
})

PORT_VALIDATION = Schema(And(
    Or(And(int, lambda p: not isinstance(p, bool)), And(str, lambda p: re.fullmatch("[0-9]+", p) is not None)),
    Use(int),
    lambda p: 0 < p < 65536
))

# attribute -> (cfg group, cfg key)
CFG_FILE_ATTRIBUTES = {
    "git_url": (REPOSITORY_CFG_GROUP, URL_CFG_KEY),
    "branch": (REPOSITORY_CFG_GROUP, BRANCH_CFG_KEY),
    "ssh_host": (SSH_CONNECTION_CFG_GROUP, HOST_CFG_KEY),
    "ssh_user": (SSH_CONNECTION_CFG_GROUP, USER_CFG_KEY),
    "ssh_key": (SSH_CONNECTION_CFG_GROUP, KEY_CFG_KEY),
    "app_port": (DEPLOYMENT_CFG_GROUP, APP_PORT_CFG_KEY),
    "remote_base": (DEPLOYMENT_CFG_GROUP, REMOTE_BASE_CFG_KEY)
}


class InitFileParser():
    """
        Collects the deployment inputs. Values are read from the optional init (answers) file first, anything missing
        is asked for on the terminal. The token is only ever taken from the environment or a hidden prompt.
    """

    def __init__(self, init_file_path=None, input_func=input, secret_func=getpass.getpass, environ=None):

        self.init_file_path = init_file_path
        self.input_func = input_func
        self.secret_func = secret_func
        self.environ = os.environ if environ is None else environ

        self.attributes = {
            "git_url": None,
            "git_token": None,
            "branch": None,
            "ssh_user": None,
            "ssh_host": None,
            "ssh_key": None,
            "app_port": None,
            "remote_base": None
        }

    def parse_init_file(self):
        """
            Loads the init file, if one was given, validates it and copies its values into the attributes.

            :return: The number of values found in the init file.
        """

        if not self.init_file_path:
            return 0

        try:
            with open(self.init_file_path) as init_json_file:
                init_json = json.load(init_json_file)

        except (OSError, ValueError) as e:
            raise ValidationError("An error occurred when parsing init file [{}]: {}".format(self.init_file_path, e))

        try:
            CFG_FILE_VALIDATION.validate(init_json)

        except SchemaError as e:
            raise ValidationError("Init file not correct format; Schema Error: [{}]".format(e))

        ret_val = 0
        for attribute, (group, key) in CFG_FILE_ATTRIBUTES.items():
            value = init_json.get(group, {}).get(key)
            if value is not None:
                self.attributes[attribute] = value
                ret_val += 1

        return ret_val

    def collect_inputs(self):
        """
            Asks for every value still missing after the init file, applies the defaults and validates the result.
            Raises ValidationError on the first invalid value.
        """

        self.parse_init_file()

        git_url = self._ask("git_url", "Enter Git repository HTTPS URL (e.g. https://github.com/user/repo.git): ")
        if not git_url:
            raise ValidationError("Git repository URL is required")
        if not project_name_from_url(git_url):
            raise ValidationError("Cannot derive a project name from {}".format(git_url))
        self.attributes["git_url"] = git_url

        if self.attributes["git_token"] is None:
            token = self.environ.get(TOKEN_ENV_VAR)
            if token is None:
                token = self._read(self.secret_func, "git_token",
                                   "Enter Personal Access Token (PAT) (input will be hidden): ")
            self.attributes["git_token"] = token.strip()

        self.attributes["branch"] = self._ask("branch", "Enter branch name (press ENTER for main): ") or DEFAULT_BRANCH

        ssh_user = self._ask("ssh_user", "Enter remote SSH username (e.g. ubuntu): ")
        if not ssh_user:
            raise ValidationError("Remote SSH username is required")
        self.attributes["ssh_user"] = ssh_user

        ssh_host = self._ask("ssh_host", "Enter remote server IP or hostname: ")
        if not ssh_host:
            raise ValidationError("Remote host is required")
        self.attributes["ssh_host"] = ssh_host

        ssh_key = self._ask("ssh_key", "Enter path to SSH private key for remote (e.g. ~/.ssh/id_rsa): ")
        self.attributes["ssh_key"] = validate_ssh_key(ssh_key)

        app_port = self._ask("app_port", "Enter application internal port (container port) (e.g. 8000): ")
        self.attributes["app_port"] = validate_port(app_port)

        self.attributes["remote_base"] = self._ask("remote_base", "Enter remote deploy base folder (default: ~/deploy_app): ") \
            or DEFAULT_REMOTE_BASE

        return self.attributes

    @property
    def project_name(self):
        return project_name_from_url(self.attributes["git_url"])

    def summary(self):
        """
            One line description of the collected inputs, safe to log as it never contains the token.
        """

        return "Repo: {} Branch: {} Remote: {}@{} AppPort: {} RemoteBase: {}".format(
            self.git_url, self.branch, self.ssh_user, self.ssh_host, self.app_port, self.remote_base)

    # ////////////////////// Helpers ////////////////////// #

    def _ask(self, attribute, prompt):

        value = self.attributes[attribute]
        if value is None:
            value = self._read(self.input_func, attribute, prompt)

        if isinstance(value, str):
            value = value.strip()

        return value

    def _read(self, read_func, attribute, prompt):

        # stdin closed or piped input exhausted
        try:
            return read_func(prompt)
        except EOFError:
            raise ValidationError("No value given for {}".format(attribute))

    def __getattr__(self, item):
        attributes = self.__dict__.get("attributes", {})
        if item in attributes:
            return attributes[item]
        raise AttributeError("No such attribute: " + item)


def validate_ssh_key(ssh_key):
    """
        Expands ~ in the key path and checks that the file exists.

        :param str ssh_key: The path given by the operator.

        :return: The expanded path.
    """

    expanded = os.path.expanduser(ssh_key or "")
    if not ssh_key or not os.path.isfile(expanded):
        raise ValidationError("SSH key not found at {}".format(ssh_key))
    return expanded


def validate_port(app_port):
    """
        Accepts digits only (or an int coming from the init file) in the range 1..65535.

        :return: The port as an int.
    """

    try:
        return PORT_VALIDATION.validate(app_port)
    except SchemaError:
        raise ValidationError("Invalid port: {}".format(app_port))


def project_name_from_url(git_url):
    """
        Name of the project directory on the remote host: the last path element of the repository URL without .git.
    """

    name = git_url.rstrip("/").split("/")[-1].split(":")[-1]
    if name.endswith(".git"):
        name = name[:-len(".git")]
    return name
