import logging

from relaygate.__main__ import banner
from relaygate.observability.metrics import emit_counter
from relaygate.util.logger import attach_uvicorn_loggers, get_logger, logger


def test_banner_marks_only_configured_variables(monkeypatch):
    for name in ("PORT", "ALL_PROXY", "AUTHORIZATION"):
        monkeypatch.delenv(name, raising=False)
        monkeypatch.delenv(f"RELAYGATE_{name}", raising=False)
    monkeypatch.setenv("ALL_PROXY", "socks5://127.0.0.1:1080")

    lines = banner().splitlines()

    assert lines[0].endswith("/v1/chat/completions")
    proxy_line = next(line for line in lines if "ALL_PROXY" in line)
    port_line = next(line for line in lines if "PORT:" in line)
    assert proxy_line.endswith("✅")
    assert not port_line.endswith("✅")


def test_uvicorn_loggers_share_gateway_handlers():
    attach_uvicorn_loggers()
    for name in ("uvicorn", "uvicorn.error"):
        server_logger = logging.getLogger(name)
        assert server_logger.handlers == logger.handlers
        assert server_logger.propagate is False


def test_child_loggers_live_under_gateway_namespace(caplog):
    assert get_logger("metrics").name == "relaygate.metrics"
    metrics_logger = get_logger("metrics")
    metrics_logger.addHandler(caplog.handler)
    try:
        with caplog.at_level(logging.INFO, logger="relaygate.metrics"):
            emit_counter("proof_of_work_degraded", labels={"difficulty": "00"})
    finally:
        metrics_logger.removeHandler(caplog.handler)
    assert "name=proof_of_work_degraded" in caplog.text
