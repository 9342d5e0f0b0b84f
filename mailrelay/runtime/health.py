from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class HealthReport:
    status: str
    details: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status, "details": dict(self.details)}


def ok(*, component: str, **details: Any) -> HealthReport:
    return HealthReport(status="OK", details={"component": component, **details})
