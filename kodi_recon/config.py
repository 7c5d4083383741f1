"""Configuration management for the reconciliation matcher."""
import os
from dataclasses import dataclass, field, asdict, replace as dc_replace
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict
from dotenv import load_dotenv

from .exceptions import ConfigurationError, InvalidRulesError


def _env_decimal(name: str, default: str) -> Decimal:
    raw = os.getenv(name, default)
    try:
        return Decimal(raw)
    except InvalidOperation:
        raise ConfigurationError(f"{name} must be a decimal number, got {raw!r}", setting=name)


@dataclass
class MatchingRules:
    """Matching engine rules, validated before any scoring begins."""
    amount_tolerance: Decimal = field(
        default_factory=lambda: _env_decimal("MATCH_AMOUNT_TOLERANCE", "0.01")
    )
    date_tolerance_days: int = field(
        default_factory=lambda: int(os.getenv("MATCH_DATE_TOLERANCE_DAYS", "3"))
    )
    description_similarity_threshold: float = field(
        default_factory=lambda: float(os.getenv("MATCH_SIMILARITY_THRESHOLD", "0.8"))
    )
    minimum_confidence: float = field(
        default_factory=lambda: float(os.getenv("MATCH_MINIMUM_CONFIDENCE", "0.7"))
    )
    auto_approve_threshold: float = field(
        default_factory=lambda: float(os.getenv("MATCH_AUTO_APPROVE_THRESHOLD", "0.90"))
    )
    amount_tolerance_percentage: Decimal = field(
        default_factory=lambda: _env_decimal("MATCH_AMOUNT_TOLERANCE_PERCENTAGE", "0")
    )

    def __post_init__(self):
        if not isinstance(self.amount_tolerance, Decimal):
            self.amount_tolerance = Decimal(str(self.amount_tolerance))
        if not isinstance(self.amount_tolerance_percentage, Decimal):
            self.amount_tolerance_percentage = Decimal(str(self.amount_tolerance_percentage))

    def effective_amount_tolerance(self, amount: Decimal) -> Decimal:
        """Larger of the absolute tolerance and the percentage of ``|amount|``."""
        proportional = abs(amount) * self.amount_tolerance_percentage / 100
        return max(self.amount_tolerance, proportional)

    def validate(self) -> "MatchingRules":
        """Raise InvalidRulesError on the first bad setting."""
        if self.amount_tolerance < 0:
            raise InvalidRulesError("amount_tolerance", self.amount_tolerance, "must not be negative")
        if self.amount_tolerance_percentage < 0:
            raise InvalidRulesError(
                "amount_tolerance_percentage", self.amount_tolerance_percentage, "must not be negative"
            )
        if isinstance(self.date_tolerance_days, bool) or not isinstance(self.date_tolerance_days, int):
            raise InvalidRulesError("date_tolerance_days", self.date_tolerance_days, "must be an integer")
        if self.date_tolerance_days < 0:
            raise InvalidRulesError("date_tolerance_days", self.date_tolerance_days, "must not be negative")

        for name in ("description_similarity_threshold", "minimum_confidence", "auto_approve_threshold"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise InvalidRulesError(name, value, "must be between 0 and 1")

        return self

    def replace(self, **overrides: Any) -> "MatchingRules":
        """Return a copy with the given non-None fields replaced."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return dc_replace(self, **changes)

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["amount_tolerance"] = str(self.amount_tolerance)
        data["amount_tolerance_percentage"] = str(self.amount_tolerance_percentage)
        return data


@dataclass
class Config:
    """Main application configuration."""
    matching: MatchingRules = field(default_factory=MatchingRules)
    database_url: str = field(
        default_factory=lambda: os.getenv("DATABASE_URL", "sqlite:///./reconciliation.db")
    )
    ledger_lookback_days: int = field(
        default_factory=lambda: int(os.getenv("LEDGER_LOOKBACK_DAYS", "30"))
    )
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    log_json: bool = field(
        default_factory=lambda: os.getenv("LOG_JSON", "false").lower() == "true"
    )

    @property
    def database_path(self) -> str:
        """Filesystem path (or ':memory:') behind the sqlite URL."""
        if not self.database_url.startswith("sqlite:///"):
            raise ConfigurationError(
                f"Only sqlite URLs are supported, got {self.database_url}",
                setting="DATABASE_URL"
            )
        path = self.database_url[len("sqlite:///"):]
        if path in ("", ":memory:"):
            return ":memory:"
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        return path


def load_config(env_file: str = None) -> Config:
    """Load configuration from the environment (and an optional .env file)."""
    load_dotenv(env_file)
    cfg = Config()
    cfg.matching.validate()
    if cfg.ledger_lookback_days < 0:
        raise ConfigurationError("LEDGER_LOOKBACK_DAYS must not be negative", setting="LEDGER_LOOKBACK_DAYS")
    return cfg
