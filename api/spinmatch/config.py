import json
import os
from dataclasses import dataclass, fields, replace
from typing import Any

DATABASE_URL = os.getenv("DATABASE_URL", "postgresql+psycopg2://postgres:postgres@db:5432/spin_match")
ADMIN_TOKEN = os.getenv("ADMIN_TOKEN", "")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

HEARTBEAT_TTL_SECONDS = float(os.getenv("HEARTBEAT_TTL_SECONDS", "10"))
REACHABILITY_GRACE_SECONDS = float(os.getenv("REACHABILITY_GRACE_SECONDS", "5"))
VOTE_WINDOW_SECONDS = float(os.getenv("VOTE_WINDOW_SECONDS", "20"))
ACK_TIMEOUT_SECONDS = float(os.getenv("ACK_TIMEOUT_SECONDS", "30"))
FAIRNESS_BOOST = int(os.getenv("FAIRNESS_BOOST", "10"))
FAIRNESS_WAIT_CREDIT = int(os.getenv("FAIRNESS_WAIT_CREDIT", "1"))
FAIRNESS_CREDIT_INTERVAL_SECONDS = float(os.getenv("FAIRNESS_CREDIT_INTERVAL_SECONDS", "5"))
RELAXATION_STEP_SECONDS = float(os.getenv("RELAXATION_STEP_SECONDS", "30"))
MAX_RELAXATION_STAGE = int(os.getenv("MAX_RELAXATION_STAGE", "1"))
SWEEP_INTERVAL_SECONDS = float(os.getenv("SWEEP_INTERVAL_SECONDS", "5"))
COOLDOWN_SECONDS = float(os.getenv("COOLDOWN_SECONDS", "300"))
SWEEP_ON_STARTUP = os.getenv("SWEEP_ON_STARTUP", "false").lower() == "true"

LOCK_BACKEND = os.getenv("LOCK_BACKEND", "memory").strip().lower()
LOCK_RETRY_ATTEMPTS = int(os.getenv("LOCK_RETRY_ATTEMPTS", "5"))
LOCK_RETRY_DELAY_SECONDS = float(os.getenv("LOCK_RETRY_DELAY_SECONDS", "0.02"))


@dataclass(frozen=True)
class MatchSettings:
    heartbeat_ttl_seconds: float = HEARTBEAT_TTL_SECONDS
    reachability_grace_seconds: float = REACHABILITY_GRACE_SECONDS
    vote_window_seconds: float = VOTE_WINDOW_SECONDS
    ack_timeout_seconds: float = ACK_TIMEOUT_SECONDS
    fairness_boost: int = FAIRNESS_BOOST
    fairness_wait_credit: int = FAIRNESS_WAIT_CREDIT
    fairness_credit_interval_seconds: float = FAIRNESS_CREDIT_INTERVAL_SECONDS
    relaxation_step_seconds: float = RELAXATION_STEP_SECONDS
    max_relaxation_stage: int = MAX_RELAXATION_STAGE
    sweep_interval_seconds: float = SWEEP_INTERVAL_SECONDS
    cooldown_seconds: float = COOLDOWN_SECONDS
    lock_retry_attempts: int = LOCK_RETRY_ATTEMPTS
    lock_retry_delay_seconds: float = LOCK_RETRY_DELAY_SECONDS

    def with_overrides(self, overrides: dict[str, Any]) -> "MatchSettings":
        known = {f.name for f in fields(self)}
        return replace(self, **{k.lower(): v for k, v in overrides.items() if k.lower() in known})


DEFAULT_MATCH_SETTINGS = MatchSettings()

if os.getenv("MATCHING_CONFIG_JSON"):
    try:
        DEFAULT_MATCH_SETTINGS = DEFAULT_MATCH_SETTINGS.with_overrides(json.loads(os.getenv("MATCHING_CONFIG_JSON", "{}")))
    except json.JSONDecodeError:
        pass
