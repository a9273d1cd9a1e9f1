import hashlib
import os
from unittest import mock

import paramiko
import pytest

from docker_deployer.errors import RemoteExecError
from docker_deployer.tree_sync.tree_sync import (
    get_all_directory_paths,
    get_copy_actions_from_diff,
    get_delete_actions_from_diff,
    get_local_directory_structure,
    sync_directory_to_server,
)


def sha1(data):
    return hashlib.sha1(data).hexdigest()


@pytest.fixture
def local_repo(tmp_path):
    repo = tmp_path / "repo"
    (repo / "src").mkdir(parents=True)
    (repo / "Dockerfile").write_bytes(b"FROM nginx:latest\n")
    (repo / "src" / "index.html").write_bytes(b"<h1>hi</h1>\n")
    (repo / ".git").mkdir()
    (repo / ".git" / "HEAD").write_bytes(b"ref: refs/heads/main\n")
    return repo


def test_local_directory_structure(local_repo):
    tree = get_local_directory_structure(str(local_repo), ignore_files=[".git"])

    assert tree == {
        "Dockerfile": sha1(b"FROM nginx:latest\n"),
        "src": {"index.html": sha1(b"<h1>hi</h1>\n")}
    }


def test_copy_actions():
    local_tree = {"a": "1", "b": "2", "dir": {"c": "3", "sub": {"d": "4"}}, "new": {"e": "5"}}
    server_tree = {"a": "1", "b": "old", "dir": {"c": "3", "sub": {}}}

    assert sorted(get_copy_actions_from_diff(local_tree, server_tree)) == ["b", "dir/sub/d", "new/e"]


def test_copy_actions_when_type_changed():
    local_tree = {"x": {"y": "1"}, "z": "2"}
    server_tree = {"x": "file", "z": {"w": "3"}}

    assert sorted(get_copy_actions_from_diff(local_tree, server_tree)) == ["x/y", "z"]
    assert sorted(get_delete_actions_from_diff(local_tree, server_tree)) == ["x", "z"]


def test_delete_actions():
    local_tree = {"a": "1", "dir": {"c": "3"}}
    server_tree = {"a": "1", "stale": "9", "dir": {"c": "3", "old": {"d": "4"}}}

    assert sorted(get_delete_actions_from_diff(local_tree, server_tree)) == ["dir/old", "stale"]


def test_identical_trees_need_no_actions():
    tree = {"a": "1", "dir": {"b": "2"}}

    assert get_copy_actions_from_diff(tree, dict(tree)) == []
    assert get_delete_actions_from_diff(tree, dict(tree)) == []


def test_all_directory_paths():
    assert sorted(get_all_directory_paths({"a": "1", "d": {"b": "2", "e": {"c": "3"}}})) == ["a", "d/b", "d/e/c"]


def test_sync_directory_to_server(local_repo):
    agent = mock.Mock()
    agent.file_exists_on_server.return_value = True
    agent.get_server_directory_structure.return_value = {
        "Dockerfile": sha1(b"FROM nginx:latest\n"),
        "stale.txt": "0" * 40,
        ".git": {"HEAD": sha1(b"ref: refs/heads/main\n")}
    }

    copied, deleted = sync_directory_to_server(agent, str(local_repo), "/srv/app")

    assert (copied, deleted) == (1, 1)
    agent.delete_file_from_server.assert_called_once_with("/srv/app/stale.txt")
    agent.copy_file_to_server.assert_called_once_with(os.path.join(str(local_repo), "src", "index.html"), "/srv/app/src")


def test_sync_creates_missing_directory(local_repo):
    agent = mock.Mock()
    agent.file_exists_on_server.return_value = False
    agent.get_server_directory_structure.return_value = {}

    copied, deleted = sync_directory_to_server(agent, str(local_repo), "/srv/app")

    agent.make_directory.assert_called_once_with("/srv/app")
    assert (copied, deleted) == (3, 0)


def test_sync_up_to_date(local_repo):
    agent = mock.Mock()
    agent.file_exists_on_server.return_value = True
    agent.get_server_directory_structure.return_value = get_local_directory_structure(str(local_repo))

    assert sync_directory_to_server(agent, str(local_repo), "/srv/app") == (0, 0)
    agent.copy_file_to_server.assert_not_called()


def test_sync_failure_is_a_remote_exec_error(local_repo):
    agent = mock.Mock()
    agent.file_exists_on_server.return_value = True
    agent.get_server_directory_structure.return_value = {}
    agent.copy_file_to_server.side_effect = paramiko.SSHException("channel closed")

    with pytest.raises(RemoteExecError) as excinfo:
        sync_directory_to_server(agent, str(local_repo), "/srv/app")

    assert excinfo.value.exit_code == 40
