"""
tests/unit/test_observability.py — Logging setup and trace context
"""

from __future__ import annotations

import json
import logging
import re

import structlog
import structlog.contextvars

from observability.logger import bind_conversation, clear_context, get_logger, setup_logging
from observability.trace import TraceContext, new_correlation_id


class TestTraceContext:

    def teardown_method(self):
        structlog.contextvars.clear_contextvars()

    def test_correlation_id_format(self):
        assert re.fullmatch(r"req_[0-9a-f]{8}", new_correlation_id())
        assert new_correlation_id() != new_correlation_id()

    def test_for_request_keeps_given_id(self):
        assert TraceContext.for_request("req_abc").correlation_id == "req_abc"

    def test_bind_and_steps(self):
        ctx = TraceContext.for_request("req_1")
        ctx.bind()
        assert structlog.contextvars.get_contextvars() == {"correlation_id": "req_1"}

        ctx.new_step(2).bind_step()
        assert structlog.contextvars.get_contextvars()["step_id"] == "stp_2"
        assert ctx.as_dict() == {"correlation_id": "req_1", "step_id": "stp_2"}

        ctx.clear_step()
        assert "step_id" not in structlog.contextvars.get_contextvars()
        ctx.clear()
        assert structlog.contextvars.get_contextvars() == {}

    def test_bind_step_without_step_is_noop(self):
        TraceContext.for_request("req_1").bind_step()
        assert structlog.contextvars.get_contextvars() == {}


class TestLogging:

    def teardown_method(self):
        clear_context()
        structlog.reset_defaults()
        logging.basicConfig(handlers=[logging.NullHandler()], force=True)

    def test_file_log_is_json_with_context(self, tmp_path):
        setup_logging(level="DEBUG", log_dir=tmp_path / "logs", console_output=False)
        bind_conversation("conv_1", "user_1")
        get_logger("copilot.test", component="unit").info("unit.event", n=3)
        logging.shutdown()

        line = (tmp_path / "logs" / "copilot.log").read_text(encoding="utf-8").strip().splitlines()[-1]
        record = json.loads(line)
        assert record["event"] == "unit.event"
        assert record["conversation_id"] == "conv_1"
        assert record["user_id"] == "user_1"
        assert record["component"] == "unit"
        assert record["n"] == 3

    def test_noisy_libraries_muted(self, tmp_path):
        setup_logging(level="DEBUG", log_dir=tmp_path, console_output=False)
        assert logging.getLogger("websockets").level == logging.WARNING
        assert logging.getLogger("httpx").level == logging.WARNING
