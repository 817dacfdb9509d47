"""
Correlation Engine

Decides whether each telemetry reading is consistent with the recent history
of its zone and section. Accepted readings enter the section history and are
forwarded downstream; rejected readings are persisted as anomaly records.

Checks run in a fixed order and stop at the first failure:
1. Touching zones - reading closer to a neighbouring zone than its own (not implemented, always passes)
2. Zone-wide     - deviation from the zone baseline (mean of section means) <= 15%
3. Own section   - deviation from the section mean <= 12.5%

Validation only runs once the histories hold window_capacity samples in total,
or when the device flags its own reading as invalid. Until then every reading
is accepted to seed the baselines.
"""

import logging
import math
from dataclasses import dataclass

from .channel import Message
from .effects import Effect, EffectDispatcher
from .exceptions import MalformedTelemetryError, UnknownZoneError
from .history import HistoryStore
from .models import AnomalyRecord, CorrelationReason, CorrelationResult, TelemetryEvent
from .settings import CorrelationSettings, ZoneTable

logger = logging.getLogger(__name__)


def deviation_percent(value: float, baseline: float) -> float:
    """|value / baseline - 1| * 100. A zero baseline deviates infinitely from any value."""
    if baseline == 0:
        return math.inf
    return abs(value / baseline - 1) * 100


@dataclass(frozen=True)
class Verdict:
    """What happened to one event."""

    event: TelemetryEvent
    validated: bool
    result: CorrelationResult

    @property
    def accepted(self) -> bool:
        return self.result.passed


class CorrelationEngine:
    """Runs the validation pipeline and applies its outcome to the history store."""

    def __init__(
        self,
        zones: ZoneTable,
        history: HistoryStore,
        settings: CorrelationSettings | None = None,
        dispatcher: EffectDispatcher | None = None,
    ):
        self.zones = zones
        self.history = history
        self.settings = settings or CorrelationSettings()
        self.dispatcher = dispatcher

        self.accepted = 0
        self.rejected = 0
        self.skipped = 0  # Accepted without validation during warm-up
        self.missed_invalid = 0  # Flagged invalid by the device but passed every check
        self.malformed = 0

    def touching_zone_check(self, event: TelemetryEvent) -> tuple[bool, float]:
        """Reading should sit closer to its own zone's band than to a neighbour's.

        Not implemented; always passes.
        """
        return True, 0.0

    def zone_wide_check(self, event: TelemetryEvent) -> tuple[bool, float]:
        baseline = self.history.zone_baseline(event.zone_id)
        if baseline is None:
            return True, 0.0

        percentage = deviation_percent(event.sample.temperature, baseline)
        logger.debug(
            f"Zone {event.zone_id} baseline {baseline:.2f}, "
            f"temperature {event.sample.temperature}, deviation {percentage:.2f}%"
        )
        return percentage <= self.settings.zone_threshold_percent, percentage

    def own_section_check(self, event: TelemetryEvent) -> tuple[bool, float]:
        baseline = self.history.section_mean(event.section_id)
        if baseline is None:
            return True, 0.0

        percentage = deviation_percent(event.sample.temperature, baseline)
        return percentage <= self.settings.section_threshold_percent, percentage

    def correlate(self, event: TelemetryEvent) -> CorrelationResult:
        """Run the checks in order, stopping at the first failure."""
        checks = (
            (CorrelationReason.WITHIN_BOUNDING_ZONES, self.touching_zone_check),
            (CorrelationReason.NOT_WITHIN_ZONE, self.zone_wide_check),
            (CorrelationReason.NOT_WITHIN_ZONE_SECTION, self.own_section_check),
        )

        percentage = 0.0
        for reason, check in checks:
            passed, percentage = check(event)
            if not passed:
                return CorrelationResult(passed=False, reason=reason, deviation_percent=percentage)

        return CorrelationResult.ok(percentage)

    def should_validate(self, event: TelemetryEvent) -> bool:
        return event.invalid or self.history.total_samples() >= self.settings.window_capacity

    def ingest(self, event: TelemetryEvent) -> Verdict:
        """Decide on one event and apply the outcome.

        The decision, the history append and the effect submission happen under
        the section lock, so effects for a section keep arrival order.

        Raises:
            UnknownZoneError: If the event's zone/section is not in the zone table
        """
        self.zones.validate_reference(event.zone_id, event.section_id)
        section = self.history.section(event.section_id)

        with section.lock:
            validated = self.should_validate(event)
            result = self.correlate(event) if validated else CorrelationResult.ok()

            if result.passed:
                section.append(event.sample)
                effect = Effect(event)
            else:
                effect = Effect(event, AnomalyRecord.from_event(event, result))

            if self.dispatcher is not None:
                self.dispatcher.submit(effect)

        if not result.passed:
            self.rejected += 1
            logger.info(
                f"Validation correlation failed for {event.device_id} - zone: {event.zone_id}, "
                f"section: {event.section_id}, invalid: {event.invalid}, "
                f"type: {event.fault_type.value if event.fault_type else None}, "
                f"reason: {result.reason.value}, percentage: {result.deviation_percent:.2f}, "
                f"temperature: {event.sample.temperature}, humidity: {event.sample.humidity}"
            )
        else:
            self.accepted += 1
            if not validated:
                self.skipped += 1
            elif event.invalid:
                self.missed_invalid += 1
                logger.debug(f"Invalid reading from {event.device_id} passed correlation ({event.fault_type})")

        return Verdict(event=event, validated=validated, result=result)

    async def handle_message(self, message: Message):
        """Reader handler: parse, ingest, acknowledge.

        Unparseable payloads and unknown zone/section references are dropped
        (acknowledged) so they are never redelivered.
        """
        try:
            event = TelemetryEvent.from_payload(message.body)
            self.ingest(event)
        except (MalformedTelemetryError, UnknownZoneError) as e:
            self.malformed += 1
            logger.warning(f"Dropping message {message.id}: {e}")

        message.finish()

    def stats(self) -> dict:
        return {
            "accepted": self.accepted,
            "rejected": self.rejected,
            "skipped": self.skipped,
            "missed_invalid": self.missed_invalid,
            "malformed": self.malformed,
            "samples": self.history.total_samples(),
        }
