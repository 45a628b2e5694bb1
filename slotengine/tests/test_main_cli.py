from __future__ import annotations

import json
from unittest.mock import patch

import pytest

import main
from slotengine.clock import BusinessClock, FixedClock
from slotengine.config import Settings
from slotengine.domain import DataFetchError

SNAPSHOT = {
    "stations": [{"id": "s1", "name": "Station 1", "break_between_appointments": 10, "slot_interval_minutes": 30}],
    "station_working_hours": [{"station_id": "s1", "weekday": "monday", "open_time": "09:00", "close_time": "17:00"}],
    "business_hours": [{"weekday": "monday", "open_time": "08:00", "close_time": "20:00"}],
    "appointments": [],
    "service_station_matrix": [{"service_id": "svc", "station_id": "s1", "base_time_minutes": 45}],
    "station_treatment_type_rules": [{"station_id": "s1", "treatment_type_id": "tt"}],
    "treatments": [{"id": "t1", "name": "Rex", "treatment_type_id": "tt"}],
}


@pytest.fixture
def snapshot_path(tmp_path) -> str:
    path = tmp_path / "snapshot.json"
    path.write_text(json.dumps(SNAPSHOT), encoding="utf-8")
    return str(path)


@pytest.fixture(autouse=True)
def _pinned_now(clock: FixedClock):
    with (
        patch("main.load_settings", return_value=Settings()),
        patch.object(BusinessClock, "now", return_value=clock.now()),
    ):
        yield


def test_times_prints_json(snapshot_path, capsys) -> None:
    code = main.main(["--snapshot", snapshot_path, "times", "--service", "svc", "--treatment-type", "tt", "--date", "2025-03-03"])

    assert code == 0
    times = json.loads(capsys.readouterr().out)
    assert len(times) == 15
    assert times[0] == {
        "stationId": "s1",
        "stationName": "Station 1",
        "time": "09:00",
        "startAt": "2025-03-03T09:00:00+02:00",
        "durationMinutes": 45,
        "requiresStaffApproval": False,
    }


def test_times_by_treatment_with_debug(snapshot_path, capsys) -> None:
    code = main.main(
        ["--snapshot", snapshot_path, "times", "--service", "svc", "--treatment", "t1", "--date", "2025-03-03", "--debug"]
    )

    assert code == 0
    payload = json.loads(capsys.readouterr().out)
    assert len(payload["times"]) == 15
    assert payload["excluded"] == []


def test_dates_written_to_output_file(snapshot_path, tmp_path) -> None:
    out = tmp_path / "dates.json"

    code = main.main(
        [
            "--snapshot",
            snapshot_path,
            "--output",
            str(out),
            "dates",
            "--service",
            "svc",
            "--treatment-type",
            "tt",
            "--from",
            "2025-03-03",
            "--to",
            "2025-03-04",
        ]
    )

    assert code == 0
    assert json.loads(out.read_text(encoding="utf-8")) == [
        {"date": "2025-03-03", "available": True},
        {"date": "2025-03-04", "available": False},
    ]


def test_retryable_failure_exits_with_2(snapshot_path) -> None:
    with patch("slotengine.provider.InMemoryProvider.fetch_appointments", side_effect=DataFetchError("down")):
        code = main.main(["--snapshot", snapshot_path, "times", "--service", "svc", "--treatment-type", "tt", "--date", "2025-03-03"])

    assert code == 2


def test_unknown_treatment_exits_with_1(snapshot_path) -> None:
    code = main.main(["--snapshot", snapshot_path, "times", "--service", "svc", "--treatment", "nope", "--date", "2025-03-03"])

    assert code == 1


def test_treatment_and_treatment_type_are_exclusive(snapshot_path) -> None:
    with pytest.raises(SystemExit):
        main.main(
            ["--snapshot", snapshot_path, "times", "--service", "svc", "--treatment", "t1", "--treatment-type", "tt", "--date", "2025-03-03"]
        )


def test_missing_api_configuration_is_logged_and_exits_with_1(caplog) -> None:
    with caplog.at_level("ERROR", logger="main"):
        code = main.main(["times", "--service", "svc", "--treatment-type", "tt", "--date", "2025-03-03"])

    assert code == 1
    assert "Missing required environment variable: SUPABASE_URL" in caplog.text


def test_invalid_settings_are_logged_and_exit_with_1(snapshot_path, caplog) -> None:
    with (
        patch("main.load_settings", side_effect=RuntimeError("Invalid MAX_WORKERS='many'")),
        caplog.at_level("ERROR", logger="main"),
    ):
        code = main.main(["--snapshot", snapshot_path, "times", "--service", "svc", "--treatment-type", "tt", "--date", "2025-03-03"])

    assert code == 1
    assert "Configuration error" in caplog.text
