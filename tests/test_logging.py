import logging

from loguru import logger
from opentelemetry.sdk.trace import TracerProvider

from claims_engine.core.logging import _record_extra, build_log_payload

METADATA = {"service_name": "claims-engine", "environment": "development", "version": "0.1.0"}


def _capture(emit) -> dict:
    records: list[dict] = []
    handler_id = logger.add(lambda message: records.append(message.record), level="DEBUG")
    try:
        emit()
    finally:
        logger.remove(handler_id)
    return records[-1]


def test_payload_carries_service_metadata_and_extra() -> None:
    record = _capture(lambda: logger.bind(job_id="gift-expiry").info("Gift expiry sweep completed"))

    payload = build_log_payload(record, METADATA)

    assert payload["message"] == "Gift expiry sweep completed"
    assert payload["level"] == "info"
    assert payload["service"] == "claims-engine"
    assert payload["version"] == "0.1.0"
    assert payload["job_id"] == "gift-expiry"
    assert "trace_id" not in payload
    assert "exception" not in payload


def test_payload_includes_trace_context_inside_a_span() -> None:
    tracer = TracerProvider().get_tracer("tests")

    with tracer.start_as_current_span("claims_ledger.record_entry") as span:
        record = _capture(lambda: logger.info("Recorded claims ledger entry"))
        expected = f"{span.get_span_context().trace_id:032x}"
        payload = build_log_payload(record, METADATA)

    assert payload["trace_id"] == expected
    assert len(payload["span_id"]) == 16


def test_payload_summarizes_exceptions() -> None:
    def _emit() -> None:
        try:
            raise RuntimeError("database is locked")
        except RuntimeError:
            logger.exception("Unit of work failed")

    payload = build_log_payload(_capture(_emit), {})

    assert payload["level"] == "error"
    assert payload["service"] == "unknown"
    assert payload["exception"] == {"type": "RuntimeError", "message": "database is locked"}


def test_stdlib_extra_fields_are_forwarded() -> None:
    record = logging.makeLogRecord({"msg": "pool checkout", "levelname": "INFO", "pool_size": 5})

    assert _record_extra(record) == {"pool_size": 5}
