"""
Tests for Configuration, Wiring and the CLI
"""

import json

import pytest
from deal_oracle import cli
from deal_oracle.config import OracleSettings, check_env
from deal_oracle.judging.judge import FallbackJudge, LLMJudge
from deal_oracle.oracle import build_oracle
from deal_oracle.payments.circle import CircleWalletClient
from deal_oracle.persistence.store import InMemoryDealStore

from conftest import ADDRESS_A, submission_text

ORACLE_ENV = [
    "ORACLE_ACCEPT_THRESHOLD",
    "ORACLE_LLM_API_KEY",
    "ORACLE_LLM_MODEL",
    "ORACLE_ALLOW_DETERMINISTIC_ACCEPT",
    "ORACLE_EVALUATION_WORKERS",
    "CIRCLE_API_KEY",
    "CIRCLE_ENTITY_SECRET",
    "ESCROW_WALLET_ID",
]


@pytest.fixture
def clean_env(monkeypatch):
    for name in ORACLE_ENV:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestSettings:
    """Test environment parsing."""

    def test_defaults(self, clean_env):
        settings = OracleSettings.from_env()

        assert settings.accept_threshold == 0.75
        assert settings.llm_model == "gpt-4.1-mini"
        assert settings.allow_deterministic_accept is False
        assert settings.payments_configured is False

    def test_overrides(self, clean_env):
        clean_env.setenv("ORACLE_ACCEPT_THRESHOLD", "0.6")
        clean_env.setenv("ORACLE_ALLOW_DETERMINISTIC_ACCEPT", "true")
        clean_env.setenv("ORACLE_EVALUATION_WORKERS", "4")
        clean_env.setenv("CIRCLE_API_KEY", "key")
        clean_env.setenv("CIRCLE_ENTITY_SECRET", "ab" * 32)
        clean_env.setenv("ESCROW_WALLET_ID", "w-1")

        settings = OracleSettings.from_env()

        assert settings.accept_threshold == 0.6
        assert settings.allow_deterministic_accept is True
        assert settings.evaluation_workers == 4
        assert settings.payments_configured is True

    def test_check_env(self):
        report = check_env({"CIRCLE_API_KEY": "k", "ORACLE_LLM_API_KEY": "sk"})

        assert report["missing_required"] == ["CIRCLE_ENTITY_SECRET", "ESCROW_WALLET_ID"]
        assert "CIRCLE_API_KEY" in report["present"]
        assert "ORACLE_LLM_API_KEY" in report["present"]


class TestBuildOracle:
    """Test wiring from settings."""

    def test_unconfigured(self):
        oracle = build_oracle(OracleSettings(database_url="memory://"))

        assert isinstance(oracle.store, InMemoryDealStore)
        assert isinstance(oracle.judge, FallbackJudge)
        assert oracle.payments is None

    def test_configured(self):
        settings = OracleSettings(
            database_url="memory://",
            llm_api_key="sk-test",
            circle_api_key="key",
            circle_entity_secret="ab" * 32,
            escrow_wallet_id="w-1",
            accept_threshold=0.9,
        )

        oracle = build_oracle(settings)

        assert isinstance(oracle.judge, LLMJudge)
        assert isinstance(oracle.payments, CircleWalletClient)
        assert oracle.gatekeeper.wallet_ref == "w-1"
        assert oracle.create(title="t", amount="1", requirements="r").accept_threshold == 0.9


class TestCli:
    """Test CLI commands against a JSON file store."""

    @pytest.fixture
    def deals_file(self, tmp_path, clean_env):
        path = tmp_path / "deals.json"
        clean_env.setenv("DATABASE_URL", f"json:///{path}")
        clean_env.setenv("ORACLE_ALLOW_DETERMINISTIC_ACCEPT", "true")
        return path

    def run(self, capsys, *argv):
        cli.main(list(argv))
        return json.loads(capsys.readouterr().out)

    def test_create_submit_evaluate(self, deals_file, capsys):
        deal = self.run(
            capsys, "create", "--title", "t", "--amount", "10",
            "--requirements", "r", "--challenge-minutes", "0",
        )
        submitted = self.run(capsys, "submit", deal["deal_id"], "--text", submission_text(ADDRESS_A))
        report = self.run(capsys, "evaluate", deal["deal_id"])

        assert submitted["deal_id"] == deal["deal_id"]
        assert report["evaluated"][0]["score"] == 0.8
        assert report["evaluated"][0]["risk_flags"] == ["no_llm_key", "deterministic_fallback"]
        assert json.loads(deals_file.read_text())[deal["deal_id"]]["status"] == "EVALUATED"

    def test_release_without_payments_fails(self, deals_file, capsys):
        deal = self.run(
            capsys, "create", "--title", "t", "--amount", "10",
            "--requirements", "r", "--challenge-minutes", "0",
        )
        self.run(capsys, "submit", deal["deal_id"], "--text", submission_text(ADDRESS_A))
        self.run(capsys, "evaluate", deal["deal_id"])

        with pytest.raises(SystemExit) as exc:
            cli.main(["release", deal["deal_id"]])

        assert exc.value.code == 1
        assert capsys.readouterr().err.strip().splitlines()[-1].startswith("Error: ")

    def test_unknown_deal(self, deals_file, capsys):
        with pytest.raises(SystemExit):
            cli.main(["status", "deal-missing"])

        assert "Unknown deal" in capsys.readouterr().err

    def test_check_env_missing(self, clean_env, capsys):
        with pytest.raises(SystemExit):
            cli.main(["check-env"])

        report = json.loads(capsys.readouterr().out)
        assert report["ok"] is False
        assert "ESCROW_WALLET_ID" in report["missing_required"]
