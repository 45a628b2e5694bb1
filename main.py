import argparse
import datetime as dt
import json
import logging

from slotengine.config import load_settings
from slotengine.domain import AvailabilityError, AvailabilityRequest
from slotengine.engine import AvailabilityEngine
from slotengine.rest_provider import RestProvider
from slotengine.snapshot_file import load_snapshot, save_result

logger = logging.getLogger(__name__)


def _setup_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    )


def _date(raw: str) -> dt.date:
    try:
        return dt.date.fromisoformat(raw)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"Invalid date {raw!r}, expected YYYY-MM-DD") from e


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="slotengine: appointment availability")
    parser.add_argument("--snapshot", help="Read tables from a JSON snapshot file instead of the API")
    parser.add_argument("--output", help="Write the JSON result to this file instead of stdout")

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--service", required=True, help="Service id")
    who = common.add_mutually_exclusive_group(required=True)
    who.add_argument("--treatment", help="Treatment id (resolves treatment and customer type)")
    who.add_argument("--treatment-type", help="Treatment type id")
    common.add_argument("--customer-type", help="Customer type id (with --treatment-type)")

    sub = parser.add_subparsers(dest="command", required=True)

    dates = sub.add_parser("dates", parents=[common], help="Which dates have at least one slot")
    dates.add_argument("--from", dest="date_from", type=_date, required=True)
    dates.add_argument("--to", dest="date_to", type=_date, required=True)

    times = sub.add_parser("times", parents=[common], help="Bookable start times for one date")
    times.add_argument("--date", type=_date, required=True)
    times.add_argument("--debug", action="store_true", help="Include excluded stations in the output")

    return parser


def _request(args: argparse.Namespace, engine: AvailabilityEngine) -> AvailabilityRequest:
    if args.treatment:
        return engine.resolve_request(args.treatment, args.service)
    return AvailabilityRequest(
        service_id=args.service,
        treatment_type_id=args.treatment_type,
        customer_type_id=args.customer_type,
    )


def _run(args: argparse.Namespace, engine: AvailabilityEngine) -> object:
    request = _request(args, engine)

    if args.command == "dates":
        flags = engine.get_available_dates(
            request.service_id,
            (args.date_from, args.date_to),
            treatment_type_id=request.treatment_type_id,
            customer_type_id=request.customer_type_id,
        )
        return [f.to_dict() for f in flags]

    result = engine.compute_day(request, args.date)
    times = [o.to_dict() for o in result.options]
    if not args.debug:
        return times
    return {
        "times": times,
        "excluded": [{"stationId": e.station_id, "reason": e.reason, "detail": e.detail} for e in result.excluded],
    }


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)

    _setup_logging()
    try:
        settings = load_settings()
        logging.getLogger().setLevel(getattr(logging, settings.log_level, logging.INFO))
        if args.snapshot:
            provider = load_snapshot(args.snapshot, default_slot_interval_minutes=settings.default_slot_interval_minutes)
        else:
            provider = RestProvider.from_settings(settings)
    except RuntimeError as e:
        logger.error("Configuration error (%s)", e)
        return 1

    try:
        engine = AvailabilityEngine.from_settings(provider, settings)
        payload = _run(args, engine)
    except AvailabilityError as e:
        logger.error("Availability request failed (%s: %s)", type(e).__name__, e)
        return 2 if e.retryable else 1
    except ValueError as e:
        logger.error("Invalid request (%s)", e)
        return 1
    finally:
        if isinstance(provider, RestProvider):
            provider.close()

    if args.output:
        save_result(args.output, payload)
        logger.info("Result written to %s", args.output)
    else:
        print(json.dumps(payload, ensure_ascii=False, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
