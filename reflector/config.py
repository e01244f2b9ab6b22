"""Configuration settings for the reflector process."""

import os
from common.constants import (
    DEFAULT_CONFIG_PATH,
    DEFAULT_LIVENESS_PORT,
    DEFAULT_WATCH_TIMEOUT_SECONDS,
)


CONFIG_PATH = os.environ.get("REFLECTOR_CONFIG_PATH", DEFAULT_CONFIG_PATH)

REFLECTOR_HOST = os.environ.get("REFLECTOR_HOST", "0.0.0.0")

REFLECTOR_PORT = int(os.environ.get("REFLECTOR_PORT", str(DEFAULT_LIVENESS_PORT)))

# "namespaced": one watch per source namespace; "cluster": a single cluster-wide watch
WATCH_SCOPE = os.environ.get("REFLECTOR_WATCH_SCOPE", "namespaced")

LABEL_SELECTOR = os.environ.get("REFLECTOR_LABEL_SELECTOR") or None

FIELD_SELECTOR = os.environ.get("REFLECTOR_FIELD_SELECTOR") or None

WATCH_TIMEOUT_SECONDS = int(os.environ.get("REFLECTOR_WATCH_TIMEOUT_SECONDS", str(DEFAULT_WATCH_TIMEOUT_SECONDS)))

CRD_PROBE = os.environ.get("REFLECTOR_CRD_PROBE", "").lower() in ("1", "true", "yes")
