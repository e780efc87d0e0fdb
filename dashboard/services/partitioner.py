from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence

from dashboard.constants import VALIDATION_PROGRESS_SPAN, VALIDATION_PROGRESS_START
from dashboard.schemas import NO_URL_REASON, InvalidScenarioRecord, Scenario
from dashboard.services.events import TEST_PROGRESS, TEST_WARNING, EventBroker, utcnow
from dashboard.services.validator import UrlValidator

LOGGER = logging.getLogger("dashboard.partitioner")

NO_URL_MESSAGE = "No URL provided for this scenario"


@dataclass
class PartitionResult:
    valid: List[Scenario] = field(default_factory=list)
    invalid: List[InvalidScenarioRecord] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.valid) + len(self.invalid)


@dataclass
class FilteredPartition:
    """Filter view of a partition.

    ``invalid`` holds only the records whose label matched the filter while
    ``reported`` holds every invalid record; the report lists them all.
    """

    valid: List[Scenario]
    invalid: List[InvalidScenarioRecord]
    reported: List[InvalidScenarioRecord]
    labels: List[str]

    @property
    def empty(self) -> bool:
        return not self.valid and not self.invalid


def parse_filter(label_filter: Optional[str]) -> List[str]:
    """Split a ``|`` delimited label filter into labels, ignoring blanks."""
    if not label_filter:
        return []
    return [part.strip() for part in label_filter.split("|") if part.strip()]


def apply_filter(partition: PartitionResult, label_filter: Optional[str]) -> FilteredPartition:
    """Restrict a partition to the filter labels.

    Every invalid record (matched or not) gets ``matchedFilter`` set so the
    report can show network failures outside the filter for awareness.
    """
    labels = parse_filter(label_filter)
    if not labels:
        return FilteredPartition(
            valid=list(partition.valid),
            invalid=list(partition.invalid),
            reported=list(partition.invalid),
            labels=[],
        )
    wanted = set(labels)
    for record in partition.invalid:
        record.matchedFilter = record.scenario.label in wanted
    return FilteredPartition(
        valid=[scenario for scenario in partition.valid if scenario.label in wanted],
        invalid=[record for record in partition.invalid if record.matchedFilter],
        reported=list(partition.invalid),
        labels=labels,
    )


def _progress(index: int, total: int) -> float:
    return round(VALIDATION_PROGRESS_START + (index / total) * VALIDATION_PROGRESS_SPAN, 2)


async def _classify(
    scenario: Scenario,
    validator: UrlValidator,
    result: PartitionResult,
    events: Optional[EventBroker],
    project_id: Optional[str],
) -> None:
    if not scenario.url:
        LOGGER.info("Scenario %s has no URL", scenario.label)
        result.invalid.append(InvalidScenarioRecord(scenario=scenario, reason=NO_URL_REASON, message=NO_URL_MESSAGE))
        return

    outcome = await validator.validate(scenario.url)
    if outcome.valid:
        result.valid.append(scenario)
        return

    result.invalid.append(
        InvalidScenarioRecord(
            scenario=scenario,
            reason=outcome.type,
            message=outcome.message,
            validation=outcome,
        )
    )
    if events is not None:
        events.publish(
            TEST_WARNING,
            {
                "projectId": project_id,
                "scenario": scenario.label,
                "type": outcome.type,
                "message": outcome.message,
                "severity": outcome.severity,
                "timestamp": utcnow(),
            },
        )


async def partition(
    scenarios: Sequence[Scenario],
    validator: UrlValidator,
    events: Optional[EventBroker] = None,
    *,
    project_id: Optional[str] = None,
) -> PartitionResult:
    """Validate scenarios one at a time and split them into testable and invalid sets."""
    result = PartitionResult()
    total = len(scenarios)
    for index, scenario in enumerate(scenarios):
        await _classify(scenario, validator, result, events, project_id)
        if events is not None:
            events.publish(
                TEST_PROGRESS,
                {
                    "projectId": project_id,
                    "status": "validating",
                    "message": f"Validating URLs... ({index + 1}/{total}) {scenario.label}",
                    "percent": _progress(index + 1, total),
                },
            )

    LOGGER.info(
        "Partitioned %s scenarios: %s valid, %s invalid",
        total,
        len(result.valid),
        len(result.invalid),
    )
    return result


def labels_of(scenarios: Iterable[Scenario]) -> List[str]:
    return [scenario.label for scenario in scenarios]
