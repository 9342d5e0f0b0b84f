from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional


def _require_dict(obj: Any, *, path: str) -> dict[str, Any]:
    if not isinstance(obj, dict):
        raise ValueError(f"{path} must be a mapping")
    return obj


def _require_bool(obj: Any, *, path: str) -> bool:
    if not isinstance(obj, bool):
        raise ValueError(f"{path} must be a boolean")
    return obj


@dataclass(frozen=True)
class ObservabilityConfig:
    metrics_enabled: bool
    tracing_enabled: bool
    event_log_dir: Optional[str]


def parse_observability_config(doc: Any) -> ObservabilityConfig:
    doc = _require_dict(doc, path="config")
    obs = doc.get("observability") or {}
    obs = _require_dict(obs, path="observability")

    event_log_dir = obs.get("event_log_dir")
    if event_log_dir is not None and (not isinstance(event_log_dir, str) or not event_log_dir.strip()):
        raise ValueError("observability.event_log_dir must be a non-empty string")

    return ObservabilityConfig(
        metrics_enabled=_require_bool(obs.get("metrics_enabled", False), path="observability.metrics_enabled"),
        tracing_enabled=_require_bool(obs.get("tracing_enabled", False), path="observability.tracing_enabled"),
        event_log_dir=event_log_dir,
    )


def load_observability_config(*, path: Path) -> ObservabilityConfig:
    try:
        import yaml
    except Exception as e:  # pragma: no cover
        raise RuntimeError(f"PyYAML dependency unavailable: {e}") from e

    return parse_observability_config(yaml.safe_load(path.read_text(encoding="utf-8")))
