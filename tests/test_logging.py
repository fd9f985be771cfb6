import json
import logging
import sys

from tibbo_barcode.logging import JsonFormatter


def test_json_formatter_includes_extra_fields() -> None:
    record = logging.LogRecord(
        name="tibbo.reconciler",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="Printing label",
        args=(),
        exc_info=None,
    )
    record.address = "0.36.119.87.182.61"
    record.label_type = "TPP2W-G2"

    payload = json.loads(JsonFormatter().format(record))

    assert payload["message"] == "Printing label"
    assert payload["logger"] == "tibbo.reconciler"
    assert payload["level"] == "INFO"
    assert payload["address"] == "0.36.119.87.182.61"
    assert payload["label_type"] == "TPP2W-G2"
    assert "lineno" not in payload


def test_json_formatter_renders_exceptions() -> None:
    try:
        raise RuntimeError("lpr vanished")
    except RuntimeError:
        record = logging.LogRecord(
            name="tibbo.printer",
            level=logging.ERROR,
            pathname=__file__,
            lineno=1,
            msg="Could not print label",
            args=(),
            exc_info=sys.exc_info(),
        )

    payload = json.loads(JsonFormatter().format(record))

    assert "lpr vanished" in payload["exc_info"]
