from __future__ import annotations

GROUP_DEMO_IO = "demo.io"
VERSION_V1 = "v1"
RSYNC_SOURCE_PLURAL = "rsyncsources"
RSYNC_SOURCE_KIND = "RsyncSource"
RSYNC_SOURCE_API_VERSION = f"{GROUP_DEMO_IO}/{VERSION_V1}"

RSYNC_SOURCE_PROTECTION_FINALIZER = "demo.io/rsync-source-protection"

CREATED_BY_LABEL = "app.kubernetes.io/created-by"
MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
NAME_LABEL = "app.kubernetes.io/name"
APP_LABEL = "app"
HOSTNAME_LABEL = "kubernetes.io/hostname"

RSYNC_SOURCE_CONTROLLER = "rsync-source-controller"
VOLUME_SOURCE_CONTROLLER = "volume-source-controller"

RSYNC_DAEMON_CONTAINER = "rsync-daemon"
RSYNC_DAEMON_PORT = 873

API_REQUEST_TIMEOUT_SECONDS = 30
