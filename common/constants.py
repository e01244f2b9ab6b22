"""Project-wide constants (annotation keys, default ports, watch timings)."""

CONTROLLER_NAME: str = "secret-reflector"

MANAGED_BY_ANNOTATION: str = "secret-reflector/managed-by"
MANAGED_BY_VALUE: str = CONTROLLER_NAME
SOURCE_ANNOTATION: str = "secret-reflector/source"

DEFAULT_LIVENESS_PORT: int = 8080
DEFAULT_CONFIG_PATH: str = "/etc/secret-reflector/config.yaml"

DEFAULT_WATCH_TIMEOUT_SECONDS: int = 290
WATCH_BACKOFF_INITIAL_SECONDS: float = 1.0
WATCH_BACKOFF_MAX_SECONDS: float = 60.0

CRD_LIST_TIMEOUT_SECONDS: int = 20
CERT_MANAGER_CRD_NAME: str = "certificates.cert-manager.io"

HTTP_NOT_FOUND: int = 404
HTTP_CONFLICT: int = 409
HTTP_GONE: int = 410

# A watch stream closing sooner than this without delivering anything counts as a failure
WATCH_MIN_STREAM_SECONDS: float = 1.0
WATCH_QUEUE_MAXSIZE: int = 1024
