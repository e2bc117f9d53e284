"""Centralized constants for the AutoUpdater host tooling."""

# Trusted origins
DEFAULT_ARTIFACT_BASE_URL = (
    "https://raw.githubusercontent.com/modelingevolution/autoupdater-compose/master"
)
DEFAULT_REGISTRY_TAGS_URL = (
    "https://registry.hub.docker.com/v2/repositories/modelingevolution/autoupdater/tags/"
)
WORKLOAD_COMPOSE_REPO_URL = "https://github.com/modelingevolution/autoupdater-compose.git"
WORKLOAD_IMAGE = "modelingevolution/autoupdater"
DEFAULT_WORKLOAD_VERSION = "1.0.42"

# Persisted layout
VERSION_MARKER_FILE = "autoupdater.version"
CHECKSUMS_FILE = "checksums.txt"
INSTALL_TEMPLATE_FILE = "install.template"
INSTALL_SCRIPT_FILE = "install.sh"
COMPOSE_FILE = "docker-compose.yml"
PRODUCTION_SETTINGS_FILE = "appsettings.Production.json"
ENV_FILE = ".env"

# Helper scripts fetched and verified before use
DEPENDENT_SCRIPTS = ("logging.sh", "install-updater.sh", "autoupdater.sh")

# Container runtime
DOCKER_SOCKET = "/var/run/docker.sock"
DOCKER_GROUP = "docker"
DOCKER_PACKAGES = (
    "docker-ce",
    "docker-ce-cli",
    "containerd.io",
    "docker-buildx-plugin",
    "docker-compose-plugin",
)

# Keys
KEY_TYPE = "rsa"
KEY_BITS = 4096
PRIVATE_KEY_NAME = "id_rsa"
