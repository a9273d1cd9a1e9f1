import json
from unittest import mock

import paramiko
import pytest

from docker_deployer import __main__ as deployer
from docker_deployer.errors import DeploymentError, RemoteExecError, SSHConnectionError, ValidationError


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    monkeypatch.delenv("DEPLOY_GIT_TOKEN", raising=False)
    monkeypatch.delenv("GIT_CONFIG_COUNT", raising=False)


@pytest.fixture
def init_file(tmp_path, ssh_key):
    path = tmp_path / "answers.json"
    path.write_text(json.dumps({
        "Repository": {"URL": "https://github.com/user/web-app.git", "Branch": "main"},
        "SSH Connection": {"Host": "10.0.0.5", "User": "ubuntu", "Key": ssh_key},
        "Deployment": {"App Port": 8000, "Remote Base": "~/deploy_app"}
    }))
    return str(path)


@pytest.fixture
def ssh_agent():
    with mock.patch.object(deployer, "SSHAgent") as ssh_agent_class:
        agent = ssh_agent_class.return_value.__enter__.return_value
        agent.resolve_remote_path.return_value = "/home/ubuntu/deploy_app"
        agent.run_script.return_value = (0, "")
        agent.run_command.return_value = (0, "200")
        agent.make_directory.return_value = (0, "")
        yield agent


@pytest.fixture
def local_steps():
    with mock.patch.object(deployer, "check_prerequisites", return_value=True) as check, \
            mock.patch.object(deployer, "clone_or_update_repo", return_value="/tmp/work/repo") as clone, \
            mock.patch.object(deployer, "verify_deployable") as verify, \
            mock.patch.object(deployer, "rsync_to_server", return_value=True) as rsync, \
            mock.patch.object(deployer, "sync_directory_to_server") as sftp_sync:
        yield mock.Mock(check=check, clone=clone, verify=verify, rsync=rsync, sftp_sync=sftp_sync)


def run_deployer(argv):
    args = deployer.parse_args(argv)
    return deployer.run(args, "deploy_test.log", input_func=mock.Mock(side_effect=AssertionError),
                        secret_func=lambda prompt: "ghp_token")


def test_parse_args():
    args = deployer.parse_args(["-v", "--cleanup", "-i", "answers.json"])

    assert args.cleanup is True
    assert args.verbose is True
    assert args.init_path == "answers.json"
    assert deployer.parse_args([]).cleanup is False


def test_full_deployment(init_file, ssh_agent, local_steps):
    assert run_deployer(["-i", init_file]) == 0

    ssh_agent.test_connectivity.assert_called_once()
    ssh_agent.resolve_remote_path.assert_called_once_with("~/deploy_app")

    script_names = [call.args[1] for call in ssh_agent.run_script.call_args_list]
    assert script_names == ["remote_prep.sh", "remote_deploy.sh"]
    deploy_script = ssh_agent.run_script.call_args_list[1].args[0]
    assert "PROJECT_DIR=/home/ubuntu/deploy_app/web-app" in deploy_script
    assert "proxy_pass http://127.0.0.1:8000;" in deploy_script

    clone_args = local_steps.clone.call_args.args
    assert clone_args[0] == "https://github.com/user/web-app.git"
    assert "ghp_token" not in clone_args[0]
    assert clone_args[3]["GIT_CONFIG_KEY_0"] == "http.extraHeader"

    ssh_agent.make_directory.assert_called_once_with("/home/ubuntu/deploy_app/web-app")
    local_steps.rsync.assert_called_once()
    local_steps.sftp_sync.assert_not_called()
    ssh_agent.run_command.assert_called_once_with(deployer.HEALTH_CHECK_COMMAND)


def test_rsync_failure_falls_back_to_sftp(init_file, ssh_agent, local_steps):
    local_steps.rsync.return_value = False

    assert run_deployer(["-i", init_file]) == 0

    local_steps.sftp_sync.assert_called_once_with(ssh_agent, "/tmp/work/repo", "/home/ubuntu/deploy_app/web-app")


def test_missing_rsync_uses_sftp(init_file, ssh_agent, local_steps):
    local_steps.check.return_value = False

    assert run_deployer(["-i", init_file]) == 0

    local_steps.rsync.assert_not_called()
    local_steps.sftp_sync.assert_called_once()


def test_cleanup(init_file, ssh_agent, local_steps):
    ssh_agent.run_script.side_effect = [(0, "Remote prep done\n"), (0, "cleanup_done\n")]

    assert run_deployer(["--cleanup", "-i", init_file]) == 0

    script_names = [call.args[1] for call in ssh_agent.run_script.call_args_list]
    assert script_names == ["remote_prep.sh", "remote_cleanup.sh"]
    local_steps.clone.assert_not_called()


def test_cleanup_failure(init_file, ssh_agent, local_steps):
    ssh_agent.run_script.side_effect = [(0, ""), (1, "rm: cannot remove")]

    with pytest.raises(RemoteExecError):
        run_deployer(["--cleanup", "-i", init_file])


def test_prep_failure_is_not_fatal(init_file, ssh_agent, local_steps):
    ssh_agent.run_script.side_effect = [OSError("sftp write failed"), (0, "")]

    assert run_deployer(["-i", init_file]) == 0


def test_deploy_failure(init_file, ssh_agent, local_steps):
    ssh_agent.run_script.side_effect = [(0, ""), (1, "Step 3/5 : RUN make\nERROR: make: *** missing target\n")]

    with pytest.raises(DeploymentError) as excinfo:
        run_deployer(["-i", init_file])

    assert excinfo.value.exit_code == 50
    assert "exit code 1" in str(excinfo.value)
    assert "ERROR: make: *** missing target" in str(excinfo.value)
    ssh_agent.run_command.assert_not_called()


def test_health_check_warning_is_not_fatal(init_file, ssh_agent, local_steps):
    ssh_agent.run_command.return_value = (7, "curl: (7) Failed to connect")

    assert run_deployer(["-i", init_file]) == 0


def test_check_health_reports_status():
    agent = mock.Mock()
    agent.run_command.return_value = (0, "200")

    assert deployer.check_health(agent) == "200"


@pytest.mark.parametrize("error, exit_code", [
    (ValidationError("Invalid port: abc"), 20),
    (SSHConnectionError("SSH connection failed to ubuntu@10.0.0.5"), 30),
    (RemoteExecError("Remote cleanup failed"), 40),
    (DeploymentError("Remote deployment failed with exit code 1"), 50),
])
def test_main_exit_codes(tmp_path, monkeypatch, error, exit_code):
    monkeypatch.chdir(tmp_path)

    with mock.patch.object(deployer, "run", side_effect=error):
        with pytest.raises(SystemExit) as excinfo:
            deployer.main([])

    assert excinfo.value.code == exit_code
    log_files = list(tmp_path.glob("deploy_*.log"))
    assert len(log_files) == 1
    log_text = log_files[0].read_text()
    assert "ERROR: {}".format(error.message) in log_text
    assert "Script exiting." in log_text


def test_main_success(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)

    with mock.patch.object(deployer, "run", return_value=0):
        with pytest.raises(SystemExit) as excinfo:
            deployer.main(["-v"])

    assert excinfo.value.code == 0


@pytest.mark.parametrize("error, exit_code", [
    (KeyboardInterrupt(), 130),
    (paramiko.SSHException("channel closed"), 40),
])
def test_main_unexpected_interruptions(tmp_path, monkeypatch, error, exit_code):
    monkeypatch.chdir(tmp_path)

    with mock.patch.object(deployer, "run", side_effect=error):
        with pytest.raises(SystemExit) as excinfo:
            deployer.main([])

    assert excinfo.value.code == exit_code
    log_text = list(tmp_path.glob("deploy_*.log"))[0].read_text()
    assert "ERROR:" in log_text
    assert "Script exiting." in log_text
