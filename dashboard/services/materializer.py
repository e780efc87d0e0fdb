from __future__ import annotations

import json
import logging
import uuid
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

from dashboard.schemas import Scenario
from dashboard.services.partitioner import parse_filter

LOGGER = logging.getLogger("dashboard.materializer")

TEMP_CONFIG_PREFIX = "temp-valid-scenarios-"


def materialize(
    config: Dict[str, Any],
    config_path: Path,
    valid: Sequence[Scenario],
    label_filter: Optional[str] = None,
    *,
    run_id: Optional[str] = None,
) -> Path:
    """Write a copy of ``config`` restricted to ``valid`` scenarios next to ``config_path``.

    The copy is the one handed to the engine, so every other key of the
    original configuration is preserved untouched.
    """
    scenarios = list(valid)
    labels = parse_filter(label_filter)
    if labels:
        wanted = set(labels)
        scenarios = [scenario for scenario in scenarios if scenario.label in wanted]
    if not scenarios:
        raise ValueError("Refusing to materialize a configuration without scenarios.")

    filtered = dict(config)
    filtered["scenarios"] = [scenario.model_dump(exclude_none=True) for scenario in scenarios]

    suffix = run_id or uuid.uuid4().hex
    target = config_path.parent / f"{TEMP_CONFIG_PREFIX}{suffix}.json"
    target.write_text(json.dumps(filtered, indent=2), encoding="utf-8")
    LOGGER.info("Materialized %s scenarios into %s", len(scenarios), target.name)
    return target


def discard(path: Optional[Path]) -> None:
    """Remove a materialized config, ignoring files that are already gone."""
    if path is None:
        return
    try:
        path.unlink()
        LOGGER.debug("Removed temporary config %s", path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        LOGGER.warning("Failed to remove temporary config %s: %s", path, exc)
