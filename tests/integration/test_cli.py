"""
Integration tests for the operator CLI
"""
import json
import re
import uuid

import pytest

from conftest import TEST_ENCRYPTION_KEY
from credential_fulfillment import cli
from credential_fulfillment.utils import config as config_module
from credential_fulfillment.utils.logger import setup_logging


@pytest.fixture(autouse=True)
def cli_environment(monkeypatch, tmp_path):
    """Point the CLI at a throwaway SQLite database"""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("ENCRYPTION_KEY", TEST_ENCRYPTION_KEY)
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'cli.db'}")
    monkeypatch.setenv("LOG_LEVEL", "WARNING")
    monkeypatch.setenv("LOG_TO_FILE", "false")
    monkeypatch.setattr(config_module, "_config", None)
    yield
    config_module._config = None
    setup_logging()


class TestCLI:
    """Test operator commands"""
    
    def test_generate_key(self, capsys):
        assert cli.main(["generate-key"]) == 0
        assert re.fullmatch(r"[0-9a-f]{64}\n", capsys.readouterr().out)
    
    def test_config_validate(self, capsys):
        assert cli.main(["config", "validate"]) == 0
        out = capsys.readouterr().out
        assert "Configuration is valid" in out
        assert TEST_ENCRYPTION_KEY not in out
    
    def test_config_validate_without_key(self, monkeypatch, capsys):
        monkeypatch.delenv("ENCRYPTION_KEY")
        
        assert cli.main(["config", "validate"]) == 1
        assert "ENCRYPTION_KEY is not set" in capsys.readouterr().out
    
    def test_init_db_then_verify_unknown_product(self, capsys):
        assert cli.main(["init-db"]) == 0
        assert cli.main(["verify-stock", str(uuid.uuid4())]) == 1
        assert "Operation failed" in capsys.readouterr().out
    
    def test_audit_empty_trail(self, capsys):
        cli.main(["init-db"])
        capsys.readouterr()
        
        assert cli.main(["audit", str(uuid.uuid4())]) == 0
        assert json.loads(capsys.readouterr().out) == []
    
    def test_missing_key_exits(self, monkeypatch):
        monkeypatch.delenv("ENCRYPTION_KEY")
        
        with pytest.raises(SystemExit) as exc_info:
            cli.main(["init-db"])
        assert exc_info.value.code == 1
    
    def test_no_command(self):
        assert cli.main([]) == 1
