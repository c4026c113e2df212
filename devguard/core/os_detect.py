"""Utilities for detecting host operating system metadata."""
from __future__ import annotations

import logging
import platform
from functools import lru_cache
from typing import Dict, List

import distro


logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_os_info() -> Dict[str, str | None]:
    """Return a dictionary describing the current operating system.

    The result is cached because this information is static for the lifetime of the
    process. Missing fields are set to ``None`` rather than omitted so that the
    structure is predictable for consumers such as the prerequisite checks.
    """

    system = platform.system()
    os_info: Dict[str, str | None] = {
        "system": system,
        "release": platform.release(),
        "distro_name": None,
        "distro_version": None,
        "distro_id": None,
        "distro_like": None,
    }

    if system == "Linux":
        os_info["distro_name"] = distro.name(pretty=True) or None
        os_info["distro_version"] = distro.version(best=True) or None
        os_info["distro_id"] = distro.id() or None
        os_info["distro_like"] = distro.like() or None
    else:
        logger.debug("Detected non-Linux platform %s", system)

    return os_info


def os_family(os_info: Dict[str, str | None]) -> List[str]:
    """Return the distribution id followed by the ids it declares itself like."""

    family = []
    if os_info.get("distro_id"):
        family.append(str(os_info["distro_id"]).lower())
    family.extend(part.lower() for part in (os_info.get("distro_like") or "").split() if part)
    return family


__all__ = ["get_os_info", "os_family"]
