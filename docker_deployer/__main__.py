#!/usr/bin/env python3

import argparse
import getpass
import logging
import posixpath
import shutil
import sys
import tempfile

import paramiko

from docker_deployer.errors import EXIT_SUCCESS, DeployError, DeploymentError, RemoteExecError
from docker_deployer.init_file_parser.init_file_parser import InitFileParser
from docker_deployer.local_repo.local_repo import (
    build_git_auth_env,
    check_prerequisites,
    clone_or_update_repo,
    rsync_to_server,
    verify_deployable,
)
from docker_deployer.logging_config import log_file_name, setup_logging
from docker_deployer.remote_scripts.remote_scripts import (
    HEALTH_CHECK_COMMAND,
    render_cleanup_script,
    render_deploy_script,
    render_prep_script,
)
from docker_deployer.ssh_agent.ssh_agent import SSHAgent
from docker_deployer.tree_sync.tree_sync import sync_directory_to_server

logger = logging.getLogger("docker_deployer")

EXIT_INTERRUPTED = 130

PREP_SCRIPT_NAME = "remote_prep.sh"
DEPLOY_SCRIPT_NAME = "remote_deploy.sh"
CLEANUP_SCRIPT_NAME = "remote_cleanup.sh"

DEPLOY_OUTPUT_TAIL_LINES = 20


def main(argv=None):

    args = parse_args(argv)

    log_file = log_file_name()
    setup_logging(log_file=log_file, verbose=args.verbose)

    try:

        exit_code = run(args, log_file)

    except DeployError as e:

        logger.error("ERROR: %s", e.message)
        exit_code = e.exit_code

    except paramiko.SSHException as e:

        logger.error("ERROR: SSH session failed: %s", e)
        exit_code = RemoteExecError.exit_code

    except KeyboardInterrupt:

        logger.error("ERROR: Interrupted by user")
        exit_code = EXIT_INTERRUPTED

    finally:

        logger.info("Script exiting. (cleanup hook)")

    sys.exit(exit_code)


def parse_args(argv=None):

    parser = argparse.ArgumentParser(prog="docker-deployer", formatter_class=argparse.ArgumentDefaultsHelpFormatter,
                                     description="Deploy a dockerized git repository to a remote host behind nginx")

    parser.add_argument('--cleanup', dest='cleanup', action='store_true', required=False, default=False,
                        help='Remove the deployed application from the remote host instead of deploying it')
    parser.add_argument('-i', '--init_path', dest='init_path', action='store', required=False, default=None,
                        help='Path of a JSON file answering some or all of the prompts')
    parser.add_argument('-v', '--verbose', dest='verbose', action='store_true', required=False, default=False,
                        help='Turns on verbosity')

    return parser.parse_args(argv)


def run(args, log_file, input_func=input, secret_func=getpass.getpass):
    """
        Runs a whole deployment, or the removal of one with --cleanup.

        :return: The exit code, failures are raised as DeployError.
    """

    use_rsync = check_prerequisites()

    logger.info("Starting deployment. Logging to %s", log_file)

    fp = InitFileParser(init_file_path=args.init_path, input_func=input_func, secret_func=secret_func)
    fp.collect_inputs()

    logger.info("Inputs collected. %s", fp.summary())

    logger.info("Testing SSH connectivity to %s@%s", fp.ssh_user, fp.ssh_host)
    with SSHAgent(fp.ssh_host, fp.ssh_user, fp.ssh_key) as ssh_agent:

        ssh_agent.test_connectivity()
        logger.info("SSH connectivity OK")

        remote_project_dir = posixpath.join(ssh_agent.resolve_remote_path(fp.remote_base), fp.project_name)

        prepare_remote_host(ssh_agent)

        if args.cleanup:
            cleanup_remote_deployment(ssh_agent, remote_project_dir, fp.project_name)
            return EXIT_SUCCESS

        work_dir = tempfile.mkdtemp(prefix="deploy_")
        try:

            logger.info("Cloning/pulling repo locally into %s", work_dir)
            env = build_git_auth_env(fp.git_url, fp.git_token)
            repo_dir = clone_or_update_repo(fp.git_url, fp.branch, work_dir, env)
            verify_deployable(repo_dir)

            transfer_project(ssh_agent, fp, repo_dir, remote_project_dir, use_rsync)

        finally:

            shutil.rmtree(work_dir, ignore_errors=True)

        deploy_project(ssh_agent, remote_project_dir, fp.project_name, fp.app_port)
        check_health(ssh_agent)

    logger.info("Deployment complete. Logfile: %s", log_file)
    return EXIT_SUCCESS


def prepare_remote_host(ssh_agent):
    """
        Installs docker, the compose plugin and nginx if they are missing. Failures are only logged.
    """

    logger.info("Uploading and executing remote preflight script")

    try:
        exit_status, _ = ssh_agent.run_script(render_prep_script(), PREP_SCRIPT_NAME)
    except (paramiko.SSHException, OSError) as e:
        logger.warning("Remote preflight script could not be run: %s", e)
    else:
        if exit_status != 0:
            logger.warning("Remote preflight script exited with code %d", exit_status)

    logger.info("Remote environment prepared (best-effort).")


def cleanup_remote_deployment(ssh_agent, remote_project_dir, project_name):

    logger.info("Cleanup mode: removing deployed app and containers on remote")

    try:
        exit_status, output = ssh_agent.run_script(render_cleanup_script(remote_project_dir, project_name),
                                                   CLEANUP_SCRIPT_NAME)
    except (paramiko.SSHException, OSError) as e:
        raise RemoteExecError("Remote cleanup failed: {}".format(e))

    if exit_status != 0 or "cleanup_done" not in output:
        raise RemoteExecError("Remote cleanup failed")

    logger.info("Remote cleanup completed")


def transfer_project(ssh_agent, fp, repo_dir, remote_project_dir, use_rsync):
    """
        Mirrors the clone into the project directory on the server, with rsync when possible and over SFTP otherwise.
    """

    logger.info("Transferring project files to remote %s@%s:%s", fp.ssh_user, fp.ssh_host, remote_project_dir)

    exit_status, output = ssh_agent.make_directory(remote_project_dir)
    if exit_status != 0:
        raise RemoteExecError("Could not create {} on remote: {}".format(remote_project_dir, output.strip()))

    if use_rsync:
        if rsync_to_server(repo_dir, fp.ssh_user, fp.ssh_host, fp.ssh_key, remote_project_dir):
            return
        logger.info("Rsync failed, switching to SFTP...")
    else:
        logger.info("Rsync not found, using SFTP fallback...")

    sync_directory_to_server(ssh_agent, repo_dir, remote_project_dir)


def deploy_project(ssh_agent, remote_project_dir, project_name, app_port):

    logger.info("Running remote deployment commands (build/run containers, nginx config)")

    script = render_deploy_script(remote_project_dir, project_name, app_port)
    try:
        exit_status, output = ssh_agent.run_script(script, DEPLOY_SCRIPT_NAME)
    except (paramiko.SSHException, OSError) as e:
        raise DeploymentError("Remote deployment could not be run: {}".format(e))

    if exit_status != 0:
        tail = "\n".join(output.strip().splitlines()[-DEPLOY_OUTPUT_TAIL_LINES:])
        raise DeploymentError("Remote deployment failed with exit code {}:\n{}".format(exit_status, tail))

    logger.info("Remote deployment finished. Checking remote service status...")


def check_health(ssh_agent):
    """
        Asks nginx on the server for its root page. The result is only reported.
    """

    try:
        exit_status, output = ssh_agent.run_command(HEALTH_CHECK_COMMAND)
    except (paramiko.SSHException, OSError) as e:
        logger.warning("Warning: could not contact remote nginx via 127.0.0.1 (%s)", e)
        return None

    if exit_status != 0:
        logger.warning("Warning: could not contact remote nginx via 127.0.0.1")
        return None

    status = output.strip()
    logger.info("Remote nginx returned HTTP status %s", status)
    return status


if __name__ == "__main__":
    main()
