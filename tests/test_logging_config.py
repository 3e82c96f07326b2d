"""Tests for the JSON log files and bound marketplace ids."""

import json
import logging

import pytest

from ekotaka.logging_config import get_logger, setup_logging


@pytest.fixture
def isolated_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    for handler in root.handlers:
        handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


def _records(path):
    for handler in logging.getLogger().handlers:
        handler.flush()
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]


def test_bound_ids_land_in_json_records(tmp_path, isolated_root_logger):
    setup_logging(tmp_path, level="DEBUG")

    log = get_logger("ekotaka.pipeline.submission", collector_id="collector-9")
    log.info("Pickup submitted")
    log.bind(pickup_id="pk-1").warning("Hotspot update skipped", extra={"order_id": "ORD-1"})

    records = _records(tmp_path / "logs" / "ekotaka.log")
    assert [r["message"] for r in records] == ["Pickup submitted", "Hotspot update skipped"]
    assert all(r["service"] == "ekotaka" and r["collector_id"] == "collector-9" for r in records)
    assert "pickup_id" not in records[0]
    assert records[1]["pickup_id"] == "pk-1"
    assert records[1]["order_id"] == "ORD-1"
    assert records[1]["level"] == "WARNING"
    assert _records(tmp_path / "logs" / "ekotaka-errors.log") == []


def test_errors_are_split_out_and_noisy_clients_quieted(tmp_path, isolated_root_logger):
    setup_logging(tmp_path, level="INFO")

    logging.getLogger("httpx").info("HTTP Request: GET https://nominatim.openstreetmap.org")
    get_logger("ekotaka.lifecycle.orders", order_id="ORD-2").error("Order refund failed")

    errors = _records(tmp_path / "logs" / "ekotaka-errors.log")
    assert [(r["message"], r["order_id"]) for r in errors] == [("Order refund failed", "ORD-2")]
    everything = _records(tmp_path / "logs" / "ekotaka.log")
    assert all("nominatim" not in r["message"] for r in everything)
    assert logging.getLogger("httpx").level == logging.WARNING
