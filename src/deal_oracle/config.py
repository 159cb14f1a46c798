"""
Oracle Settings

All runtime configuration is read from the environment, with defaults that
are safe for local development (no payouts, no external judge).
"""

import os
from dataclasses import dataclass
from typing import Dict, List, Optional


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    return float(raw) if raw else default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    return int(raw) if raw else default


REQUIRED_ENV = ["CIRCLE_API_KEY", "CIRCLE_ENTITY_SECRET", "ESCROW_WALLET_ID"]
OPTIONAL_ENV = ["ORACLE_LLM_API_KEY", "ORACLE_ALLOW_DETERMINISTIC_ACCEPT", "DATABASE_URL"]


@dataclass
class OracleSettings:
    """Runtime settings for the deal oracle."""
    database_url: str = "sqlite:///deal_oracle.db"
    accept_threshold: float = 0.75
    challenge_minutes: float = 60.0

    # Judge
    llm_api_key: Optional[str] = None
    llm_base_url: str = "https://api.openai.com/v1"
    llm_model: str = "gpt-4.1-mini"
    llm_timeout: float = 30.0
    allow_deterministic_accept: bool = False
    evaluation_workers: int = 1

    # Payments
    circle_api_key: Optional[str] = None
    circle_entity_secret: Optional[str] = None
    circle_base_url: str = "https://api.circle.com"
    escrow_wallet_id: Optional[str] = None
    payout_asset_symbol: str = "USDC"
    payment_timeout: float = 30.0
    explorer_tx_url: str = "https://sepolia.basescan.org/tx/{tx_hash}"

    @classmethod
    def from_env(cls) -> "OracleSettings":
        return cls(
            database_url=os.environ.get("DATABASE_URL", cls.database_url),
            accept_threshold=_env_float("ORACLE_ACCEPT_THRESHOLD", cls.accept_threshold),
            challenge_minutes=_env_float("ORACLE_CHALLENGE_MINUTES", cls.challenge_minutes),
            llm_api_key=os.environ.get("ORACLE_LLM_API_KEY") or None,
            llm_base_url=os.environ.get("ORACLE_LLM_BASE_URL", cls.llm_base_url),
            llm_model=os.environ.get("ORACLE_LLM_MODEL", cls.llm_model),
            llm_timeout=_env_float("ORACLE_LLM_TIMEOUT", cls.llm_timeout),
            allow_deterministic_accept=_env_bool("ORACLE_ALLOW_DETERMINISTIC_ACCEPT"),
            evaluation_workers=_env_int("ORACLE_EVALUATION_WORKERS", cls.evaluation_workers),
            circle_api_key=os.environ.get("CIRCLE_API_KEY") or None,
            circle_entity_secret=os.environ.get("CIRCLE_ENTITY_SECRET") or None,
            circle_base_url=os.environ.get("CIRCLE_BASE_URL", cls.circle_base_url),
            escrow_wallet_id=os.environ.get("ESCROW_WALLET_ID") or None,
            payout_asset_symbol=os.environ.get("ORACLE_PAYOUT_ASSET", cls.payout_asset_symbol),
            payment_timeout=_env_float("ORACLE_PAYMENT_TIMEOUT", cls.payment_timeout),
            explorer_tx_url=os.environ.get("ORACLE_EXPLORER_TX_URL", cls.explorer_tx_url),
        )

    @property
    def payments_configured(self) -> bool:
        return bool(self.circle_api_key and self.circle_entity_secret and self.escrow_wallet_id)


def check_env(environ: Optional[Dict[str, str]] = None) -> Dict[str, List[str]]:
    """
    Report which settings are present.

    Returns a dict with "missing_required", "missing_optional" and "present".
    """
    environ = os.environ if environ is None else environ
    report: Dict[str, List[str]] = {
        "missing_required": [],
        "missing_optional": [],
        "present": [],
    }
    for name in REQUIRED_ENV:
        report["present" if environ.get(name) else "missing_required"].append(name)
    for name in OPTIONAL_ENV:
        report["present" if environ.get(name) else "missing_optional"].append(name)
    return report
