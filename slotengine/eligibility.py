from __future__ import annotations

import logging

from slotengine.domain import EligibilityInputs, EligibleStation, StationTreatmentTypeRule

logger = logging.getLogger(__name__)


def _base_times_for_service(inputs: EligibilityInputs, service_id: str) -> dict[str, float]:
    # Several matrix rows for one station: the smallest positive base time wins.
    candidates: dict[str, list[float]] = {}
    for row in inputs.matrix:
        if row.service_id != service_id:
            continue
        candidates.setdefault(row.station_id, []).append(row.base_time_minutes or 0)

    result: dict[str, float] = {}
    for station_id, values in candidates.items():
        positive = [v for v in values if v > 0]
        result[station_id] = min(positive) if positive else 0
    return result


def _bookable_rules(inputs: EligibilityInputs, treatment_type_id: str | None) -> dict[str, StationTreatmentTypeRule]:
    rules: dict[str, StationTreatmentTypeRule] = {}
    if treatment_type_id is None:
        return rules

    for rule in inputs.rules:
        if rule.treatment_type_id != treatment_type_id:
            continue
        if not rule.is_active or not rule.remote_booking_allowed:
            continue
        rules.setdefault(rule.station_id, rule)
    return rules


def _allow_lists(inputs: EligibilityInputs) -> dict[str, set[str]]:
    allowed: dict[str, set[str]] = {}
    for row in inputs.allowed_customer_types:
        allowed.setdefault(row.station_id, set()).add(row.customer_type_id)
    return allowed


def filter_eligible_stations(
    inputs: EligibilityInputs,
    *,
    service_id: str,
    treatment_type_id: str | None,
    customer_type_id: str | None,
) -> list[EligibleStation]:
    """Stations that may serve this service / treatment type / customer type.

    1. active stations with a service-station matrix row for the service;
    2. whose rule for the treatment type is active and remote-bookable
       (no rule means no self-service booking);
    3. whose customer-type allow-list, when non-empty, lists the customer type.

    An empty result is a normal outcome, not an error.
    """
    base_times = _base_times_for_service(inputs, service_id)
    rules = _bookable_rules(inputs, treatment_type_id)
    allow_lists = _allow_lists(inputs)

    eligible: list[EligibleStation] = []
    for station in sorted(inputs.stations, key=lambda s: (s.display_order, s.id)):
        if not station.is_active:
            continue
        if station.id not in base_times:
            continue

        rule = rules.get(station.id)
        if rule is None:
            logger.debug("Station %s has no bookable rule for treatment type %s", station.id, treatment_type_id)
            continue

        allowed = allow_lists.get(station.id)
        if allowed and customer_type_id not in allowed:
            logger.debug(
                "Station %s restricted to customer types %s, skipping %s",
                station.id,
                ", ".join(sorted(allowed)),
                customer_type_id,
            )
            continue

        eligible.append(
            EligibleStation(
                station=station,
                base_time_minutes=base_times[station.id],
                duration_modifier_minutes=rule.duration_modifier_minutes or 0,
                requires_staff_approval=rule.requires_staff_approval,
            )
        )

    if eligible:
        logger.info(
            "Eligible stations for service=%s treatment_type=%s: %s",
            service_id,
            treatment_type_id,
            ", ".join(e.station_id for e in eligible),
        )
    else:
        logger.info("No eligible stations for service=%s treatment_type=%s", service_id, treatment_type_id)

    return eligible
