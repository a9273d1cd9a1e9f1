#!/usr/bin/env python3

"""
    This python file holds the ssh_agent used to connect and run commands via ssh on the deployment server. All the
    remote work of the docker_deployer (preparing the host, running the build, transferring files when rsync is not
    available and checking the health of the proxy) goes through this class.
"""

import logging
import os
import posixpath
import re
import shlex
import stat

import paramiko

from docker_deployer.errors import SSHConnectionError

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT = 10


class SSHAgent():
    """
        This is the ssh_agent class. It is used to send commands and files to a given server via ssh.
    """
    def __init__(self, host, username, key_filename, connect_timeout=CONNECT_TIMEOUT):

        self.host = host
        self.username = username
        self.key_filename = key_filename
        self.connect_timeout = connect_timeout

        self.ssh = None
        self.sftp = None
        self._home = None

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    def connect(self):
        """
            Opens the SSH and SFTP sessions. Any failure is raised as an SSHConnectionError.
        """

        self._ssh_connect()
        self._ssh_sftp_connect()

    def close(self):

        # Closes SFTP connection
        if self.sftp is not None:
            logger.debug("Closing SFTP Connection")
            self.sftp.close()
            self.sftp = None

        # Closed connection with the SSH server
        if self.ssh is not None:
            logger.debug("Closing SSH Connection")
            self.ssh.close()
            self.ssh = None
            logger.debug("Connection to %s closed.", self.host)

    def test_connectivity(self):
        """
            Runs a trivial command on the server to make sure commands can be executed.
        """

        try:
            exit_status, output = self.run_command("echo ok")
        except (paramiko.SSHException, OSError) as e:
            raise SSHConnectionError("SSH connection failed to {}@{}: {}".format(self.username, self.host, e))

        if exit_status != 0 or output.strip() != "ok":
            raise SSHConnectionError("SSH connection failed to {}@{}".format(self.username, self.host))

    def run_command(self, command, get_pty=False):
        """
            Runs a command on the server and waits for it to finish. The output of the command is logged line by
            line at DEBUG level.

            :param str command: Command to run
            :param bool get_pty: Request a pseudo terminal, needed by sudo on some hosts.

            :return: A tuple of the exit status and the combined stdout/stderr of the command.
        """

        logger.debug("Running on %s: %s", self.host, command)
        channel = self.ssh.get_transport().open_session()
        try:

            if get_pty:
                channel.get_pty()

            # stderr is merged into stdout before the command starts so no output is left in a separate buffer
            channel.set_combine_stderr(True)
            channel.exec_command(command)
            channel.shutdown_write()

            output = channel.makefile("rb").read().decode("utf-8", errors="replace")
            exit_status = channel.recv_exit_status()

        finally:
            channel.close()

        for line in output.splitlines():
            self._host_log(line)

        return exit_status, output

    def run_script(self, script, remote_name):
        """
            Uploads a shell script to /tmp on the server and runs it with sh.

            :param str script: Content of the script.
            :param str remote_name: File name of the script in /tmp.

            :return: A tuple of the exit status and the output of the script.
        """

        remote_path = posixpath.join("/tmp", remote_name)
        with self.sftp.open(remote_path, "w") as remote_file:
            remote_file.write(script)

        try:
            return self.run_command("sh {}".format(shlex.quote(remote_path)))
        finally:
            try:
                self.run_command("rm -f {}".format(shlex.quote(remote_path)))
            except (paramiko.SSHException, OSError) as e:
                logger.debug("Could not remove %s from %s: %s", remote_path, self.host, e)

    def resolve_remote_path(self, path):
        """
            Expands a leading ~ against the home directory of the ssh user, since SFTP does not go through a shell.

            :param str path: The path, possibly starting with ~.

            :return: The expanded path without any trailing slash.
        """

        if path == "~" or path.startswith("~/"):
            if self._home is None:
                self._home = self.sftp.normalize(".")
            path = self._home + path[1:]

        return path.rstrip("/") or "/"

    def make_directory(self, directory):
        """
            Creates the directory, and its parents, on the server.
        """

        return self.run_command("mkdir -p {}".format(shlex.quote(directory)))

    def get_server_directory_structure(self, directory, ignore_files=()):
        """
            This method will use the sftp connection to list the server directory and populate a directory structure of
            the repo. The structure of the repo will be denoted by a dictionary with each key being the name of an
            element in the repo. The value to each element will either be the sha1 digest of the file, or a dictionary
            representing the directory of the element. The digests of all files are computed in a single sha1sum pass.

            example_repo_structure = {
                "foo": "2aae6c35c94fcfb415dbe95f408b9ce91ee846ed",
                "bar": { ... }
            }

            :param str directory: The path to the server directory/repo.
            :param ignore_files: Element names that are skipped.

            :return: The structure of the repo in type dictionary.
        """

        hashes = self._get_server_file_hashes(directory)
        return self._scan_server_directory(directory, "", hashes, ignore_files)

    def copy_file_to_server(self, local_file, server_path):
        """
            This method will use the put() method to copy a file over to the ssh server from the local machine.

            :param str local_file: The local path to the file that needs to be copied.
            :param str server_path: The server directory to copy the local file into.
        """

        logger.debug("Copying %s to %s/", local_file, server_path)

        if not self.file_exists_on_server(file_path=server_path):
            self.make_directory(server_path)

        file_name = os.path.split(local_file)[1]
        self.sftp.put(local_file, posixpath.join(server_path, file_name))

    def delete_file_from_server(self, file_path):
        """
            This method will delete a file or directory on the ssh server.

            :param str file_path: The path to the file that needs to be deleted
        """

        logger.debug("Deleting %s", file_path)
        return self.run_command("rm -rf {}".format(shlex.quote(file_path)))

    def file_exists_on_server(self, file_path):
        """
            This method will check if the file path given as a parameter exists on the ssh server. It will return T/F.

            :param str file_path: The path to determine if it exists or not.

            :return: T/F based on if the path exists or not.
        """

        try:

            self.sftp.stat(file_path)

        except IOError:

            return False

        return True

    # ////////////////////// Helpers ////////////////////// #

    def _scan_server_directory(self, directory, relative, hashes, ignore_files):

        ret_val = {}

        # Iterate through all elements in the server repo
        for element in self.sftp.listdir_attr(directory):

            element_name = element.filename
            if element_name in ignore_files:
                continue

            element_relative = posixpath.join(relative, element_name)

            # If the element is a directory we recursively call this method to get the structure of the directory
            if stat.S_ISDIR(element.st_mode):

                ret_val[element_name] = self._scan_server_directory(
                    posixpath.join(directory, element_name), element_relative, hashes, ignore_files)

            # If the element is a file, we set the element's value to its digest
            elif stat.S_ISREG(element.st_mode):

                ret_val[element_name] = hashes.get(element_relative)

            else:

                logger.warning("Did not recognize [%s] element type in directory: [%s]", element_name, directory)

        return ret_val

    def _get_server_file_hashes(self, directory):
        """
            Runs sha1sum over every regular file under the directory.

            :return: A dictionary of path relative to the directory -> sha1 digest.
        """

        command = "cd {} && find . -type f -exec sha1sum {{}} +".format(shlex.quote(directory))
        exit_status, output = self.run_command(command)

        ret_val = {}
        for line in output.splitlines():
            digest_and_path = self._extract_hash(line)
            if digest_and_path is not None:
                digest, path = digest_and_path
                ret_val[path[2:] if path.startswith("./") else path] = digest

        return ret_val

    def _extract_hash(self, output):
        match = re.match(r"^([0-9a-f]{40})\s+\*?(.+)$", output)
        if match is None:
            return None
        return match.group(1), match.group(2)

    def _ssh_connect(self):
        """
            This method will connect to an ssh server given its class variables instantiated in the init method.
        """

        logger.debug("SSH Connecting to: Host-%s, Username-%s", self.host, self.username)

        try:

            self.ssh = paramiko.SSHClient()
            self.ssh.load_system_host_keys()
            self.ssh.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            self.ssh.connect(hostname=self.host, username=self.username, key_filename=self.key_filename,
                             timeout=self.connect_timeout, banner_timeout=self.connect_timeout,
                             auth_timeout=self.connect_timeout, look_for_keys=False, allow_agent=False)

        except (paramiko.SSHException, OSError) as e:

            raise SSHConnectionError("SSH connection failed to {}@{}: {}".format(self.username, self.host, e))

        logger.debug("Connected")

    def _ssh_sftp_connect(self):
        """
            This method will use the open_sftp() method to establish an SFTP connection with the ssh server
        """

        logger.debug("SFTP Connecting")

        try:

            self.sftp = self.ssh.open_sftp()

        except (paramiko.SSHException, OSError) as e:

            raise SSHConnectionError("Unable to create an sftp connection to {}: {}".format(self.host, e))

        logger.debug("Connected")

    def _host_log(self, msg):
        """
            Logs a line of output from the ssh server, prefixed with the server host.
        """

        logger.debug("%s: %s", self.host, msg)
