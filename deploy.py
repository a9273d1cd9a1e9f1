#!/usr/bin/env python3
"""
    This python file launches the docker_deployer. The docker_deployer deploys a dockerized git repository to a single
    remote host and puts it behind an nginx reverse proxy.

    The deployer asks for (or reads from the init file given with -i) the following information:

        - The HTTPS URL of the git repository and the branch to deploy.
        - A personal access token for private repositories (hidden prompt, or the DEPLOY_GIT_TOKEN variable).
        - The user, host and private key used for the ssh connection.
        - The port the application listens on inside its container.
        - The folder on the remote host the project is copied into.

    The remote host is provisioned with docker and nginx if needed, the project is built with docker compose or its
    Dockerfile and nginx forwards port 80 to the application. Running with --cleanup removes the deployment instead.

    Exit codes: 0 success, 10 missing program, 20 validation error, 30 ssh error, 40 remote exec error,
    50 deploy error.
"""

from docker_deployer.__main__ import main

if __name__ == "__main__":

    main()
