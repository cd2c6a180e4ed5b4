"""Resource attributes describing the process that emits telemetry."""

import platform
from typing import Any, Dict, Optional

from ..constants import APP_NAME, APP_VERSION

SDK_NAME = "dice_server.observability"


def build_resource(
    service_name: str = APP_NAME,
    extra: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Return the resource attribute dict shared by all signals."""
    resource: Dict[str, Any] = {
        "service.name": service_name,
        "service.version": APP_VERSION,
        "telemetry.sdk.name": SDK_NAME,
        "telemetry.sdk.language": "python",
        "process.runtime.version": platform.python_version(),
    }
    if extra:
        resource.update(extra)
    return resource
