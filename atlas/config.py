from __future__ import annotations

import math
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, model_validator


class FusionWeightsConfig(BaseModel):
    tech: float = 0.5
    sent: float = 0.2
    pred: float = 0.2
    macro: float = 0.1

    @model_validator(mode="after")
    def validate_weights(self) -> "FusionWeightsConfig":
        for name, value in self.as_dict().items():
            if not math.isfinite(value) or value < 0:
                raise ValueError(f"fusion.weights.{name} must be a finite value >= 0")
        return self

    def as_dict(self) -> dict[str, float]:
        return {
            "tech": float(self.tech),
            "sent": float(self.sent),
            "pred": float(self.pred),
            "macro": float(self.macro),
        }


class FusionConfig(BaseModel):
    weights: FusionWeightsConfig = Field(default_factory=FusionWeightsConfig)
    primary_source: str = "tech"
    volatility_weight: float = 0.1
    min_signal_score: float = 0.7
    cooldown_minutes: int = 15
    max_signal_age_seconds: int = 300

    @model_validator(mode="after")
    def validate_values(self) -> "FusionConfig":
        self.primary_source = self.primary_source.strip().lower()
        if not self.primary_source:
            raise ValueError("fusion.primary_source must not be empty")
        if self.volatility_weight < 0:
            raise ValueError("fusion.volatility_weight must be >= 0")
        if not (0 <= self.min_signal_score <= 1):
            raise ValueError("fusion.min_signal_score must be in [0,1]")
        if self.cooldown_minutes < 0:
            raise ValueError("fusion.cooldown_minutes must be >= 0")
        if self.max_signal_age_seconds <= 0:
            raise ValueError("fusion.max_signal_age_seconds must be > 0")
        return self


class RiskConfig(BaseModel):
    news_window_minutes: int = 5
    max_atr_threshold: float = 0.002
    default_risk_pct: float = 10.0
    reduced_risk_pct: float = 5.0
    max_loss_streak: int = 3
    pause_duration_minutes: int = 15
    max_drawdown_percent: float = 0.20
    drawdown_pause_minutes: int = 60

    @model_validator(mode="after")
    def validate_risk(self) -> "RiskConfig":
        if self.news_window_minutes < 0:
            raise ValueError("news_window_minutes must be >= 0")
        if self.max_atr_threshold <= 0:
            raise ValueError("max_atr_threshold must be > 0")
        if not (0 < self.default_risk_pct <= 100):
            raise ValueError("default_risk_pct must be in (0,100]")
        if not (0 < self.reduced_risk_pct <= self.default_risk_pct):
            raise ValueError("reduced_risk_pct must be in (0, default_risk_pct]")
        if self.max_loss_streak <= 0:
            raise ValueError("max_loss_streak must be > 0")
        if self.pause_duration_minutes <= 0:
            raise ValueError("pause_duration_minutes must be > 0")
        if not (0 < self.max_drawdown_percent < 1):
            raise ValueError("max_drawdown_percent must be in (0,1)")
        if self.drawdown_pause_minutes < self.pause_duration_minutes:
            raise ValueError("drawdown_pause_minutes must be >= pause_duration_minutes")
        return self


class SizingConfig(BaseModel):
    compound_interval: int = 10
    compound_risk_pct: float = 0.10
    min_stake_absolute: float = 1.0
    max_stake_absolute: float = 1000.0

    @model_validator(mode="after")
    def validate_values(self) -> "SizingConfig":
        if self.compound_interval <= 0:
            raise ValueError("compound_interval must be > 0")
        if not (0 < self.compound_risk_pct <= 1.0):
            raise ValueError("compound_risk_pct must be in (0,1]")
        if self.min_stake_absolute <= 0:
            raise ValueError("min_stake_absolute must be > 0")
        if self.max_stake_absolute < self.min_stake_absolute:
            raise ValueError("max_stake_absolute must be >= min_stake_absolute")
        return self


class ExecutionConfig(BaseModel):
    mode: str = "simulated"
    symbol: str = "EURUSD"
    operation_interval_seconds: int = 60
    expiry_minutes: int = 5
    initial_bankroll: float = 1000.0
    sim_win_probability: float = 0.5
    sim_payout_rate: float = 0.85
    sim_seed: int | None = None

    @model_validator(mode="after")
    def validate_values(self) -> "ExecutionConfig":
        mode = str(self.mode).strip().lower()
        if mode in {"backtest", "sim", "simulation"}:
            mode = "simulated"
        if mode not in {"live", "simulated"}:
            raise ValueError("execution.mode must be one of: live, simulated")
        self.mode = mode
        self.symbol = self.symbol.strip().upper()
        if not self.symbol:
            raise ValueError("execution.symbol must not be empty")
        if self.operation_interval_seconds <= 0:
            raise ValueError("operation_interval_seconds must be > 0")
        if self.expiry_minutes <= 0:
            raise ValueError("expiry_minutes must be > 0")
        if not math.isfinite(self.initial_bankroll) or self.initial_bankroll <= 0:
            raise ValueError("initial_bankroll must be > 0")
        if not (0 <= self.sim_win_probability <= 1):
            raise ValueError("sim_win_probability must be in [0,1]")
        if self.sim_payout_rate <= 0:
            raise ValueError("sim_payout_rate must be > 0")
        return self


class BrokerConfig(BaseModel):
    base_url: str = "http://localhost:8080/api/v1"
    timeout_seconds: int = 10
    request_max_attempts: int = 4
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 10.0

    @model_validator(mode="after")
    def validate_values(self) -> "BrokerConfig":
        if self.request_max_attempts <= 0:
            raise ValueError("broker.request_max_attempts must be > 0")
        if self.backoff_base_seconds <= 0:
            raise ValueError("broker.backoff_base_seconds must be > 0")
        if self.backoff_max_seconds < self.backoff_base_seconds:
            raise ValueError("broker.backoff_max_seconds must be >= backoff_base_seconds")
        return self


class CalendarConfig(BaseModel):
    provider: str = "file"
    events_file: str = "news_data/events.json"
    http_timeout_seconds: int = 10
    http_cache_ttl_seconds: int = 300
    request_max_attempts: int = 3
    backoff_base_seconds: float = 0.5
    currencies: list[str] = Field(default_factory=lambda: ["USD", "EUR", "GBP", "JPY"])

    @model_validator(mode="after")
    def normalize(self) -> "CalendarConfig":
        self.provider = self.provider.strip().lower()
        if self.provider not in {"file", "http"}:
            raise ValueError("calendar.provider must be file or http")
        if self.request_max_attempts <= 0:
            raise ValueError("calendar.request_max_attempts must be > 0")
        normalized: list[str] = []
        seen: set[str] = set()
        for item in self.currencies:
            currency = str(item).strip().upper()
            if not currency or currency in seen:
                continue
            seen.add(currency)
            normalized.append(currency)
        self.currencies = normalized
        return self


class SignalsConfig(BaseModel):
    files: dict[str, str] = Field(
        default_factory=lambda: {
            "tech": "signals/tech.json",
            "sent": "signals/sent.json",
            "pred": "signals/pred.json",
            "macro": "signals/macro.json",
        }
    )
    volatility_file: str = "signals/vol.json"

    @model_validator(mode="after")
    def normalize(self) -> "SignalsConfig":
        self.files = {
            str(key).strip().lower(): str(value)
            for key, value in self.files.items()
            if str(key).strip()
        }
        return self


class StorageConfig(BaseModel):
    state_dir: str = "state"
    journal_path: str = "state/journal.db"


class MonitoringConfig(BaseModel):
    status_path: str = "state/status.json"
    alerts_enabled: bool = True
    status_host: str = "127.0.0.1"
    status_port: int = 3000


class AppConfig(BaseModel):
    fusion: FusionConfig = Field(default_factory=FusionConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)
    sizing: SizingConfig = Field(default_factory=SizingConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    broker: BrokerConfig = Field(default_factory=BrokerConfig)
    calendar: CalendarConfig = Field(default_factory=CalendarConfig)
    signals: SignalsConfig = Field(default_factory=SignalsConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    @model_validator(mode="after")
    def validate_cross_fields(self) -> "AppConfig":
        if self.fusion.primary_source not in self.fusion.weights.as_dict():
            raise ValueError("fusion.primary_source must have a configured weight")
        return self


def load_config(path: str | Path) -> AppConfig:
    config_path = Path(path)
    with config_path.open("r", encoding="utf-8") as file:
        raw: dict[str, Any] = yaml.safe_load(file) or {}
    return AppConfig.model_validate(raw)
