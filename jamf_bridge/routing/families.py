from __future__ import annotations

from enum import Enum

LEGACY_PATH_MARKER = "/JSSResource/"


class EndpointFamily(str, Enum):
    MODERN = "modern"
    LEGACY = "legacy"


def classify_path(path: str) -> EndpointFamily:
    """
    Pure classification: any path containing /JSSResource/ is Legacy.
    """
    return EndpointFamily.LEGACY if LEGACY_PATH_MARKER in str(path or "") else EndpointFamily.MODERN
