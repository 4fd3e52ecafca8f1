import json
import logging

import pytest

from revenue_kernel.utils.logger import (
    JSONFormatter,
    KeyValueFormatter,
    get_logger,
    log_business_event,
    log_performance,
)


class _Collector(logging.Handler):
    def __init__(self):
        super().__init__(level=logging.DEBUG)
        self.records = []

    def emit(self, record):
        self.records.append(record)


@pytest.fixture()
def collect():
    attached = []

    def _attach(name):
        handler = _Collector()
        target = logging.getLogger(name)
        target.addHandler(handler)
        attached.append((target, handler, target.level))
        target.setLevel(logging.DEBUG)
        return handler.records

    yield _attach
    for target, handler, level in attached:
        target.removeHandler(handler)
        target.setLevel(level)


def test_get_logger_nests_under_package():
    assert get_logger("audit").logger.name == "revenue_kernel.audit"
    assert get_logger("revenue_kernel.jobs.cron").logger.name == "revenue_kernel.jobs.cron"


def test_structured_fields_drop_none(collect):
    records = collect("revenue_kernel.unit")
    get_logger("unit").info("Claimed batch", site_id="site-a", claimed=3, provider_key=None)
    assert records[0].extra_data == {"site_id": "site-a", "claimed": 3}


def test_business_event_goes_to_audit_channel(collect):
    records = collect("revenue_kernel.audit")
    log_business_event("ocq_queue_action", {"affected": 2}, site_id="site-a")
    [record] = records
    assert record.getMessage() == "Business event: ocq_queue_action"
    assert record.extra_data == {"event_type": "ocq_queue_action", "site_id": "site-a", "affected": 2}


def test_performance_is_warning_only_when_slow(collect):
    records = collect("revenue_kernel.performance")
    log_performance("ocq_upload_cycle", 12.3456, {"processed": 4}, slow_ms=1000)
    log_performance("ocq_upload_cycle", 1500, slow_ms=1000)

    fast, slow = records
    assert fast.levelno == logging.INFO
    assert fast.extra_data == {"processed": 4, "operation": "ocq_upload_cycle", "duration_ms": 12.35}
    assert slow.levelno == logging.WARNING
    assert slow.extra_data["slow_ms"] == 1000


def test_formatters_render_fields():
    record = logging.LogRecord("revenue_kernel.x", logging.INFO, __file__, 1, "hello", None, None)
    record.extra_data = {"site_id": "site-a"}

    payload = json.loads(JSONFormatter().format(record))
    assert payload["msg"] == "hello" and payload["site_id"] == "site-a"
    assert payload["level"] == "INFO"
    assert KeyValueFormatter("%(message)s").format(record) == "hello | site_id=site-a"
