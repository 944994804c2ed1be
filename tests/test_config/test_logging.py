import structlog

import nexus.config as config_module
import nexus.logging as logging_module
from nexus.config import Config
from nexus.logging import _SinkWriter, configure_logging


def test_sink_writer_forwards_complete_lines():
    lines: list[str] = []
    writer = _SinkWriter(lines.append)

    writer.write("first\nsec")
    assert lines == ["first"]

    writer.write("ond\n\n")
    writer.write("tail")
    writer.flush()
    assert lines == ["first", "second", "tail"]


def test_configure_logging_routes_lines_to_sink(monkeypatch):
    lines: list[str] = []
    monkeypatch.setattr(config_module, "_config", Config())
    monkeypatch.setattr(logging_module, "_log_sink", lines.append)

    try:
        configure_logging("INFO")
        structlog.get_logger("nexus.test").info("machine probed", machine="SIGMA")
        structlog.get_logger("nexus.test").debug("filtered out")
    finally:
        structlog.reset_defaults()

    assert len(lines) == 1
    assert "machine probed" in lines[0]
    assert "SIGMA" in lines[0]
