"""
Application Startup Tests
Logging configured by the lifespan so server launchers other than __main__ get it
"""

import logging

import pytest
from fastapi.testclient import TestClient

import main
from config import Config


@pytest.fixture
def audit_log():
    audit = logging.getLogger("audit")
    before = list(audit.handlers)
    yield audit
    for handler in list(audit.handlers):
        if handler not in before:
            audit.removeHandler(handler)
            handler.close()


def audit_file_handlers(audit):
    return [h for h in audit.handlers if getattr(h, main.AUDIT_HANDLER_MARKER, False)]


class TestApplicationStartup:

    def test_lifespan_installs_audit_handler(self, audit_log, tmp_path, monkeypatch):
        log_file = tmp_path / "audit.log"
        monkeypatch.setattr(Config, "AUDIT_LOG_FILE", str(log_file))

        with TestClient(main.create_app()) as client:
            response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "database": True}
        handlers = audit_file_handlers(audit_log)
        assert len(handlers) == 1
        assert handlers[0].baseFilename == str(log_file)

    def test_configure_logging_is_idempotent(self, audit_log, tmp_path):
        main.configure_logging(str(tmp_path / "audit.log"))
        main.configure_logging(str(tmp_path / "other.log"))

        assert len(audit_file_handlers(audit_log)) == 1
        assert audit_log.level == logging.INFO
