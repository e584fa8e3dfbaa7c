"""Marker environment snapshots."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Tuple

from packaging.markers import default_environment

# Marker variables recorded in a snapshot. Kernel release and build strings
# are excluded.
STABLE_MARKERS = (
    "implementation_name",
    "implementation_version",
    "os_name",
    "platform_machine",
    "platform_python_implementation",
    "platform_system",
    "python_full_version",
    "python_version",
    "sys_platform",
)


@dataclass(frozen=True)
class Environment:
    """Immutable PEP 508 marker variables for one resolve."""
    values: Tuple[Tuple[str, str], ...]

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, str]) -> "Environment":
        return cls(tuple(sorted((str(k), str(v)) for k, v in mapping.items() if k != "extra")))

    def as_dict(self) -> Dict[str, str]:
        return dict(self.values)

    def marker_values(self, extra: str = "") -> Dict[str, str]:
        values = self.as_dict()
        values["extra"] = extra
        return values

    def identity(self) -> str:
        """Stable digest of the snapshot, for log lines."""
        text = "\n".join(f"{k}={v}" for k, v in self.values)
        return hashlib.sha256(text.encode("utf-8")).hexdigest()


class EnvironmentProvider:
    """Supplies the target environment for marker evaluation.

    Starts from the running interpreter's stable marker values and applies
    overrides, so a lock can be computed for another platform or Python
    version. Overrides may name any marker variable.
    """

    def __init__(self, overrides: Optional[Mapping[str, str]] = None):
        self._overrides = dict(overrides or {})

    def snapshot(self) -> Environment:
        running = default_environment()
        values = {key: running[key] for key in STABLE_MARKERS if key in running}
        values.update(self._overrides)
        return Environment.from_mapping(values)
