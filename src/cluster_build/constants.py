"""Fixed names, images, ports and timeouts used by the build engine."""

# In-cluster services installed by the provider bootstrap
DOCKER_DAEMON_DEPLOYMENT = "docker-daemon"
DOCKER_DAEMON_CONTAINER = "docker-daemon"
BUILD_SYNC_DEPLOYMENT = "build-sync"
BUILD_SYNC_VOLUME = "build-sync"
DOCKER_AUTH_SECRET = "builder-docker-auth"
IN_CLUSTER_REGISTRY_SERVICE = "docker-registry"

# Ports
RSYNC_PORT = 873
REGISTRY_PORT = 5000

# The in-cluster registry is reached through a proxy listening on localhost
IN_CLUSTER_REGISTRY_HOSTNAME = f"127.0.0.1:{REGISTRY_PORT}"

# Paths inside remote pods
BUILD_STAGING_MOUNT = "/build-staging"
COMMS_MOUNT = "/.cluster-build/comms"

# Images
KANIKO_IMAGE = "gcr.io/kaniko-project/executor:debug-v0.19.0"
SKOPEO_IMAGE = "quay.io/skopeo/stable:v1.14.2"
PROXY_IMAGE = "alpine/socat:1.7.4.4"
SUPPORT_IMAGE = "busybox:1.36.1"

# Timeouts (seconds). Probes and pushes do not depend on build complexity.
MANIFEST_PROBE_TIMEOUT = 300
SKOPEO_POD_TIMEOUT = 60
SKOPEO_COMMAND_TIMEOUT = "30s"
PUSH_TIMEOUT = 300
DEFAULT_BUILD_TIMEOUT = 1200

# Kubernetes API calls
KUBE_REQUEST_TIMEOUT = 60

# Polling
MARKER_POLL_INTERVAL = 0.3
POD_POLL_INTERVAL = 1.0

# Context sync retry budget
SYNC_MAX_ATTEMPTS = 3
SYNC_MIN_BACKOFF = 0.5

# Output markers meaning "the image is not in the registry"
DOCKER_ABSENT_MARKER = "no such manifest"
SKOPEO_ABSENT_MARKER = "manifest unknown"
