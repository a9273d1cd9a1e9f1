#!/usr/bin/env python3

"""
    SFTP based mirroring of the local clone onto the server. This is what the deployer falls back to when rsync is not
    installed locally or fails: both trees are described as nested dictionaries and only the difference is transferred,
    files that no longer exist locally are deleted on the server.
"""

import hashlib
import logging
import os
import posixpath

import paramiko

from docker_deployer.errors import RemoteExecError

logger = logging.getLogger(__name__)

HASH_CHUNK_SIZE = 64 * 1024


def sync_directory_to_server(ssh_agent, local_directory, server_directory, ignore_files=()):
    """
        Makes the server directory an exact copy of the local directory.

        :param SSHAgent ssh_agent: Connected agent used for the transfer.
        :param str local_directory: The local clone.
        :param str server_directory: The absolute project directory on the server.
        :param ignore_files: Element names skipped on both sides.

        :return: A tuple of the number of copied files and deleted elements.
    """

    try:

        if not ssh_agent.file_exists_on_server(server_directory):
            ssh_agent.make_directory(server_directory)

        scan_local_repo = get_local_directory_structure(local_directory, ignore_files)
        scan_server_repo = ssh_agent.get_server_directory_structure(server_directory, ignore_files)

        if scan_local_repo == scan_server_repo:
            logger.info("Remote project directory is up to date")
            return 0, 0

        files_to_copy = get_copy_actions_from_diff(scan_local_repo, scan_server_repo)
        files_to_del = get_delete_actions_from_diff(scan_local_repo, scan_server_repo)

        # Deletes first so a file replacing a directory of the same name (or the reverse) can be copied
        for file in files_to_del:
            ssh_agent.delete_file_from_server(posixpath.join(server_directory, file))

        for file in files_to_copy:
            local_file = os.path.join(local_directory, *file.split("/"))
            server_dir = posixpath.dirname(posixpath.join(server_directory, file))
            ssh_agent.copy_file_to_server(local_file, server_dir)

    except (paramiko.SSHException, OSError) as e:
        raise RemoteExecError("File transfer failed (sftp fallback): {}".format(e))

    logger.info("Copied %d file(s), deleted %d element(s) on the server", len(files_to_copy), len(files_to_del))
    return len(files_to_copy), len(files_to_del)


def get_local_directory_structure(directory_path, ignore_files=()):
    """
        This method will use the os library to scan the local directory and populate a directory structure of the local
        repo. The structure of the repo will be denoted by a dictionary with each key being the name of an element in
        the repo. The value to each element will either be the sha1 digest of the file, or a dictionary representing
        the directory of the element. Therefore checking the type of the value of a key in repo structure will let you
        know whether the element is either a directory or a file. Elements whose name is in ignore_files are skipped.

        example_repo_structure = {
            "foo": "2aae6c35c94fcfb415dbe95f408b9ce91ee846ed",
            "bar": { ... }
        }

        :param str directory_path: The path to the local directory/repo.
        :param ignore_files: Element names that are skipped.

        :return: The structure of the repo in type dictionary.
    """

    ret_val = {}

    with os.scandir(directory_path) as directory_scan:
        for element in directory_scan:

            element_name = element.name
            if element_name in ignore_files:
                continue

            if element.is_dir():

                ret_val[element_name] = get_local_directory_structure(element.path, ignore_files)

            elif element.is_file():

                ret_val[element_name] = get_file_hash(element.path)

            else:
                logger.warning("Did not recognize [%s] element type in directory: [%s]", element_name, directory_path)

    return ret_val


def get_file_hash(file_path):

    digest = hashlib.sha1()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(HASH_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def get_copy_actions_from_diff(local_tree, server_tree):
    """
        This method will go through each file in the local repo and check to see if the same file exists in the server
        repo. It will the use the logic below to determine and return a list of files to copy over to the server repo.

            If the server does not have the file -> file needs to be copied to the server.
            If the server has the file but they differ -> file needs to be copied to the sever.
            If the server has the file and they are the same -> no action.

        :param dict local_tree: The repo structure of the repo on the local machine.
        :param dict server_tree: The repo structure of the repo on the server machine.

        :return: A list of files needed to be copied on the server machine.
    """

    ret_val = []

    for element_name, element_value in local_tree.items():

        is_dir = isinstance(element_value, dict)
        server_value = server_tree.get(element_name)

        if element_name not in server_tree or is_dir != isinstance(server_value, dict):

            # A directory missing on the server means every file in it has to be copied
            if is_dir:
                ret_val += [element_name + "/" + copy_path for copy_path in get_all_directory_paths(element_value)]
            else:
                ret_val.append(element_name)

        elif element_value != server_value:

            if is_dir:
                new_actions = get_copy_actions_from_diff(element_value, server_value)
                ret_val += [element_name + "/" + copy_path for copy_path in new_actions]
            else:
                ret_val.append(element_name)

    return ret_val


def get_delete_actions_from_diff(local_tree, server_tree):
    """
        This method will go through each elements in the server repo structure and will compare with the local repo
        structure to find what needs to be deleted from the server repo in order to keep both structures consistent.

            If the element in the server does not exist in the local repo -> element needs to the deleted from the server
            If the element changed from file to directory or back -> element needs to be deleted from the server
            If the element is a directory on both sides -> recursively call the method

        :param dict local_tree: The repo structure of the repo on the local machine.
        :param dict server_tree: The repo structure of the repo on the server machine.

        :return: A list of files/directories needed to be deleted on the server machine.
    """

    ret_val = []

    for element_name, element_value in server_tree.items():

        element_is_dir = isinstance(element_value, dict)

        if element_name not in local_tree or element_is_dir != isinstance(local_tree[element_name], dict):

            ret_val.append(element_name)

        elif element_is_dir:

            new_actions = get_delete_actions_from_diff(local_tree[element_name], element_value)
            ret_val += [element_name + "/" + delete_path for delete_path in new_actions]

    return ret_val


def get_all_directory_paths(directory_tree):
    """
        This method takes in a directory structure and returns the path to each file in the directory as list of strings.

        :param dict directory_tree: This is a directory structure in a dictionary.

        :return: A list of all paths to each file in the dictionary.
    """

    ret_val = []

    for name, element in directory_tree.items():

        if isinstance(element, dict):
            ret_val += [name + "/" + file for file in get_all_directory_paths(element)]
        else:
            ret_val.append(name)

    return ret_val
