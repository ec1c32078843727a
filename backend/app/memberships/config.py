"""Membership engine configuration helpers."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional
import os


@dataclass(frozen=True)
class MembershipConfig:
    """Runtime knobs for the membership engine and its scheduler."""

    require_payment_confirmation: bool = False
    provider_timeout_seconds: float = 10.0
    max_write_attempts: int = 5
    expiring_soon_days: int = 7
    sweep_enabled: bool = True
    sweep_interval_seconds: float = 86400.0
    store: str = "postgres"
    currency: str = "SGD"


def _to_bool(value: Optional[str], *, default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def _to_float(value: Optional[str], *, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected float value, got {value!r}") from exc


def load_membership_config(env: Optional[Mapping[str, str]] = None) -> MembershipConfig:
    """Load :class:`MembershipConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    store = (env_mapping.get("MEMBERSHIP_STORE") or "postgres").strip().lower()
    if store not in {"postgres", "memory"}:
        raise ValueError(f"Unsupported MEMBERSHIP_STORE {store!r}")

    return MembershipConfig(
        require_payment_confirmation=_to_bool(
            env_mapping.get("MEMBERSHIP_REQUIRE_PAYMENT_CONFIRMATION"), default=False
        ),
        provider_timeout_seconds=max(
            0.1, _to_float(env_mapping.get("MEMBERSHIP_PROVIDER_TIMEOUT"), default=10.0)
        ),
        max_write_attempts=max(1, _to_int(env_mapping.get("MEMBERSHIP_MAX_WRITE_ATTEMPTS"), default=5)),
        expiring_soon_days=max(0, _to_int(env_mapping.get("MEMBERSHIP_EXPIRING_SOON_DAYS"), default=7)),
        sweep_enabled=_to_bool(env_mapping.get("MEMBERSHIP_SWEEPS_ENABLED"), default=True),
        sweep_interval_seconds=max(
            60.0, _to_float(env_mapping.get("MEMBERSHIP_SWEEP_INTERVAL"), default=86400.0)
        ),
        store=store,
        currency=(env_mapping.get("MEMBERSHIP_CURRENCY") or "SGD").strip().upper(),
    )


__all__ = ["MembershipConfig", "load_membership_config"]
