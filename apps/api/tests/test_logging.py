import json
import logging

from clubledger_api.core.logging import configure_logging, sync_logger


def _lines(capsys) -> list[dict]:
    return [json.loads(line) for line in capsys.readouterr().out.splitlines() if line.strip()]


def test_sync_logs_are_json_with_service_fields(capsys) -> None:
    configure_logging(service_name="clubledger-api", environment="test", version="9.9.9")

    sync_logger("batch-sync").info("Xero sync completed", invoices_synced=2)

    [entry] = _lines(capsys)
    assert entry["message"] == "Xero sync completed"
    assert entry["level"] == "info"
    assert entry["category"] == "xero_sync"
    assert entry["operation"] == "batch-sync"
    assert entry["invoices_synced"] == 2
    assert (entry["service"], entry["environment"], entry["version"]) == ("clubledger-api", "test", "9.9.9")
    assert "trace_id" not in entry


def test_stdlib_records_are_bridged_and_noisy_loggers_quieted(capsys) -> None:
    configure_logging(service_name="clubledger-api", environment="test", version="9.9.9")

    logging.getLogger("uvicorn.error").warning("worker {pid} restarted")
    logging.getLogger("httpx").info("HTTP Request: PUT /Invoices")

    [entry] = _lines(capsys)
    assert entry["message"] == "worker {pid} restarted"
    assert entry["category"] == "uvicorn.error"
    assert entry["level"] == "warning"
