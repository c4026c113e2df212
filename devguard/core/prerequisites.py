"""Environment preconditions checked before any mutation is attempted."""
from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass
from typing import Callable, Iterable, List, Sequence

from devguard.core.errors import PrerequisiteError
from devguard.core.os_detect import get_os_info, os_family


logger = logging.getLogger(__name__)


class Requirement:
    """A declarative precondition. ``check`` returns a problem description or ``None``."""

    description = "requirement"

    def check(self) -> str | None:  # pragma: no cover - interface
        raise NotImplementedError


@dataclass(frozen=True)
class BinaryAvailable(Requirement):
    name: str
    which: Callable[[str], str | None] = shutil.which

    @property
    def description(self) -> str:  # type: ignore[override]
        return f"binary '{self.name}' on PATH"

    def check(self) -> str | None:
        if self.which(self.name) is None:
            return f"required binary '{self.name}' was not found on PATH"
        return None


@dataclass(frozen=True)
class ElevatedPrivileges(Requirement):
    geteuid: Callable[[], int] = os.geteuid

    description = "root privileges"

    def check(self) -> str | None:
        if self.geteuid() != 0:
            return "devguard must run as root (try sudo)"
        return None


@dataclass(frozen=True)
class OsFamily(Requirement):
    accepted: Sequence[str]
    os_info: Callable[[], dict] = get_os_info

    @property
    def description(self) -> str:  # type: ignore[override]
        return "OS family " + "/".join(self.accepted)

    def check(self) -> str | None:
        info = self.os_info()
        if (info.get("system") or "").lower() != "linux":
            return f"unsupported platform {info.get('system')!r}; devguard targets Linux"
        family = os_family(info)
        if not any(name in family for name in self.accepted):
            return (
                f"unsupported distribution {info.get('distro_name') or info.get('distro_id')!r}; "
                f"expected one of {', '.join(self.accepted)}"
            )
        return None


def validate(requirements: Iterable[Requirement]) -> None:
    """Evaluate every requirement, then raise once with the full list of problems."""

    missing: List[str] = []
    for requirement in requirements:
        problem = requirement.check()
        if problem is None:
            logger.debug("Prerequisite satisfied: %s", requirement.description)
            continue
        logger.error("Prerequisite failed: %s", problem)
        missing.append(problem)

    if missing:
        raise PrerequisiteError(missing)
    logger.info("All prerequisites satisfied")


__all__ = ["BinaryAvailable", "ElevatedPrivileges", "OsFamily", "Requirement", "validate"]
