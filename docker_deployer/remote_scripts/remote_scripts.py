#!/usr/bin/env python3

"""
    Shell scripts run on the server and the nginx site file written there. The scripts are rendered here and
    uploaded by the SSHAgent, so every value substituted into them is shell quoted.
"""

import re
import shlex

from docker_deployer.local_repo.local_repo import COMPOSE_FILES

NGINX_SITE_NAME = "auto_deploy.conf"
NGINX_SITES_AVAILABLE = "/etc/nginx/sites-available"
NGINX_SITES_ENABLED = "/etc/nginx/sites-enabled"
NGINX_SITE_CONF = NGINX_SITES_AVAILABLE + "/" + NGINX_SITE_NAME
NGINX_SITE_LINK = NGINX_SITES_ENABLED + "/" + NGINX_SITE_NAME

DOCKER_INSTALL_URL = "https://get.docker.com"
PREP_PACKAGES = "ca-certificates curl gnupg lsb-release"

HEALTH_CHECK_COMMAND = "curl -fsS -o /dev/null -w '%{http_code}' http://127.0.0.1/"

NGINX_SITE_TEMPLATE = """server {{
    listen 80;
    server_name _;
    location / {{
        proxy_pass http://127.0.0.1:{app_port};
        proxy_set_header Host $host;
        proxy_set_header X-Real-IP $remote_addr;
        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
    }}
}}
"""

# docker group membership granted by the prep script only applies to new logins
DOCKER_SELECT = """if docker info >/dev/null 2>&1; then
  DOCKER="docker"
else
  DOCKER="sudo docker"
fi
"""

PREP_SCRIPT = """set -u
LOG_REMOTE="/tmp/remote_prep_$(date +%Y%m%d_%H%M%S).log"
echo "$(date -u +%Y-%m-%dT%H:%M:%SZ) Starting remote setup" >> "$LOG_REMOTE"

if command -v apt >/dev/null 2>&1; then
  echo "Updating apt..." >> "$LOG_REMOTE"
  sudo apt update -y >> "$LOG_REMOTE" 2>&1 || true
  sudo apt install -y {packages} >> "$LOG_REMOTE" 2>&1 || true
else
  echo "Non-apt system; manual install required" >> "$LOG_REMOTE"
fi

if ! command -v docker >/dev/null 2>&1; then
  echo "Installing Docker..." >> "$LOG_REMOTE"
  curl -fsSL {docker_install_url} | sh >> "$LOG_REMOTE" 2>&1 || true
fi

if ! docker compose version >/dev/null 2>&1 && ! sudo docker compose version >/dev/null 2>&1; then
  echo "Installing docker-compose plugin..." >> "$LOG_REMOTE"
  sudo apt install -y docker-compose-plugin >> "$LOG_REMOTE" 2>&1 || true
fi

if [ "$(id -un)" != "root" ]; then
  sudo usermod -aG docker "$(id -un)" >> "$LOG_REMOTE" 2>&1 || true
fi

if ! command -v nginx >/dev/null 2>&1; then
  echo "Installing nginx..." >> "$LOG_REMOTE"
  sudo apt install -y nginx >> "$LOG_REMOTE" 2>&1 || true
  sudo systemctl enable nginx >> "$LOG_REMOTE" 2>&1 || true
  sudo systemctl start nginx >> "$LOG_REMOTE" 2>&1 || true
fi

echo "Remote prep done" >> "$LOG_REMOTE"
cat "$LOG_REMOTE"
"""

DEPLOY_SCRIPT = """set -eu
PROJECT_DIR={project_dir}
APP_PORT={app_port}
NAME={container_name}
REMOTE_LOG="/tmp/deploy_action_$(date +%Y%m%d_%H%M%S).log"
trap 'cat "$REMOTE_LOG"' EXIT
echo "Starting remote deploy" >> "$REMOTE_LOG"

{docker_select}
cd "$PROJECT_DIR"

if {compose_test}; then
  echo "Using docker-compose" >> "$REMOTE_LOG"
  $DOCKER compose down --remove-orphans >> "$REMOTE_LOG" 2>&1 || true
  $DOCKER compose pull >> "$REMOTE_LOG" 2>&1 || true
  $DOCKER compose up -d --build >> "$REMOTE_LOG" 2>&1
else
  echo "Using Dockerfile" >> "$REMOTE_LOG"
  if $DOCKER ps -a --format '{{{{.Names}}}}' | grep -q "^$NAME\\$"; then
    $DOCKER rm -f "$NAME" >> "$REMOTE_LOG" 2>&1 || true
  fi
  $DOCKER build -t "$NAME:latest" . >> "$REMOTE_LOG" 2>&1
  $DOCKER run -d --restart unless-stopped -p "$APP_PORT:$APP_PORT" --name "$NAME" "$NAME:latest" >> "$REMOTE_LOG" 2>&1
fi

sleep 3
$DOCKER ps --filter "status=running" --format '{{{{.Names}}}}\\t{{{{.Status}}}}' >> "$REMOTE_LOG"

SITE_TMP="$(mktemp)"
cat > "$SITE_TMP" <<'NGINX_EOF'
{nginx_site}NGINX_EOF
sudo mv "$SITE_TMP" {site_conf}
sudo chmod 644 {site_conf}
sudo ln -sf {site_conf} {site_link}
sudo rm -f {sites_enabled}/default >/dev/null 2>&1 || true

sudo nginx -t >> "$REMOTE_LOG" 2>&1 || true
sudo systemctl reload nginx >> "$REMOTE_LOG" 2>&1 || true

echo "Remote deploy finished" >> "$REMOTE_LOG"
"""

CLEANUP_SCRIPT = """set -eu
REM_DIR={project_dir}
NAME={container_name}

{docker_select}
if [ -d "$REM_DIR" ]; then
  cd "$REM_DIR"
  if {compose_test}; then
    $DOCKER compose down --remove-orphans || true
  fi
  cd /
fi
if $DOCKER ps -a --format '{{{{.Names}}}}' 2>/dev/null | grep -q "^$NAME\\$"; then
  $DOCKER rm -f "$NAME" || true
fi
sudo rm -rf "$REM_DIR"
sudo rm -f {site_link} {site_conf}
sudo systemctl reload nginx >/dev/null 2>&1 || true
echo cleanup_done
"""


def container_name(project_name):
    """
        Docker image and container name for a project: lowercase, anything outside [a-z0-9_.-] replaced by "-".
    """

    name = re.sub(r"[^a-z0-9_.-]", "-", project_name.lower()).strip("-._")
    return name or "app"


def render_nginx_site(app_port):
    return NGINX_SITE_TEMPLATE.format(app_port=int(app_port))


def render_prep_script():
    """
        Best-effort provisioning of the server: docker, the compose plugin and nginx. Every step may fail without
        stopping the script.
    """

    return PREP_SCRIPT.format(packages=PREP_PACKAGES, docker_install_url=DOCKER_INSTALL_URL)


def render_deploy_script(project_dir, project_name, app_port):
    """
        Builds and runs the project with docker compose when the project has a compose file, with docker build/run
        otherwise, then points nginx at the application port. Stops at the first failing build or run step.

        :param str project_dir: Absolute project directory on the server.
        :param str project_name: Name of the project, used for the container and image.
        :param int app_port: Port the application listens on in its container.

        :return: The script text.
    """

    return DEPLOY_SCRIPT.format(
        project_dir=shlex.quote(project_dir),
        app_port=int(app_port),
        container_name=shlex.quote(container_name(project_name)),
        docker_select=DOCKER_SELECT,
        compose_test=_compose_test(),
        nginx_site=render_nginx_site(app_port),
        site_conf=NGINX_SITE_CONF,
        site_link=NGINX_SITE_LINK,
        sites_enabled=NGINX_SITES_ENABLED
    )


def render_cleanup_script(project_dir, project_name):
    """
        Stops the deployment, removes the project directory and the nginx site. Prints cleanup_done at the end.
    """

    return CLEANUP_SCRIPT.format(
        project_dir=shlex.quote(project_dir),
        container_name=shlex.quote(container_name(project_name)),
        docker_select=DOCKER_SELECT,
        compose_test=_compose_test(),
        site_conf=NGINX_SITE_CONF,
        site_link=NGINX_SITE_LINK
    )


def _compose_test():
    return " || ".join("[ -f {} ]".format(compose_file) for compose_file in COMPOSE_FILES)
