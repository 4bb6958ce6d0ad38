from __future__ import annotations

import json
import logging
import time
from importlib.metadata import PackageNotFoundError, version as pkg_version

log = logging.getLogger("agentpulse")
_SERVICE_NAME = "agentpulse"

try:
    _SERVICE_VERSION = pkg_version(_SERVICE_NAME)
except PackageNotFoundError:
    _SERVICE_VERSION = "dev"


def log_metric(name: str, **fields: object) -> None:
    payload = {
        "metric": name,
        "ts": time.time(),
        "service": _SERVICE_NAME,
        "version": _SERVICE_VERSION,
        **fields,
    }
    log.info("metric %s", json.dumps(payload, separators=(",", ":"), sort_keys=True))
