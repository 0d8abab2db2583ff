"""logger.py 单元测试"""

from __future__ import annotations

import json
import logging

from straightpm.utils.logger import JSONFormatter, reset_logging, setup_logging


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord("straightpm.test", logging.INFO, __file__, 1, "构建 %s", ("magit",), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    def test_basic_fields(self) -> None:
        entry = json.loads(JSONFormatter().format(_record()))
        assert entry["level"] == "INFO"
        assert entry["logger"] == "straightpm.test"
        assert entry["message"] == "构建 magit"
        assert "package" not in entry

    def test_package_extra(self) -> None:
        entry = json.loads(JSONFormatter().format(_record(package="magit")))
        assert entry["package"] == "magit"


class TestSetupLogging:
    def test_replaces_handlers(self) -> None:
        try:
            setup_logging("DEBUG")
            setup_logging("WARNING", json_output=True)
            root = logging.getLogger()
            assert len(root.handlers) == 1
            assert isinstance(root.handlers[0].formatter, JSONFormatter)
            assert root.level == logging.WARNING
        finally:
            reset_logging()
            logging.getLogger().setLevel(logging.WARNING)
