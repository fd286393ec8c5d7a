# src/basketbatch/runtime/engine_config.py
from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from basketbatch.ledger.constants import BPS_DENOMINATOR, DEFAULT_COOLDOWN_SECONDS, DEFAULT_SLIPPAGE_BPS
from basketbatch.ledger.fixed_point import parse_units
from basketbatch.runtime.nav import ComponentPricing
from basketbatch.runtime.rate_source import StaticRateSource

Json = Dict[str, Any]


def _as_int(v: Any, default: int) -> int:
    try:
        return int(v)
    except Exception:
        return int(default)


def _as_str(v: Any, default: str) -> str:
    if v is None:
        return str(default)
    s = str(v)
    return s if s.strip() else str(default)


def _as_bool(v: Any, default: bool) -> bool:
    if v is None:
        return bool(default)
    if isinstance(v, bool):
        return v
    s = str(v).strip().lower()
    if s in {"1", "true", "yes", "y", "on"}:
        return True
    if s in {"0", "false", "no", "n", "off"}:
        return False
    return bool(default)


def _as_float_or_none(v: Any) -> Optional[float]:
    if v is None or v == "":
        return None
    return float(v)


@dataclass(frozen=True)
class HopSpec:
    kind: str  # "static"
    rate: int

    @classmethod
    def from_json(cls, raw: Any, *, component_id: str) -> "HopSpec":
        if isinstance(raw, (str, int, float)) and not isinstance(raw, bool):
            return cls(kind="static", rate=parse_units(raw))
        if not isinstance(raw, dict):
            raise ValueError(f"price hop for {component_id!r} must be an object or a decimal string")
        kind = _as_str(raw.get("kind"), "static").strip().lower()
        if kind != "static":
            raise ValueError(f"unsupported price hop kind for {component_id!r}: {kind!r}")
        if "rate" not in raw:
            raise ValueError(f"static price hop for {component_id!r} is missing 'rate'")
        return cls(kind=kind, rate=parse_units(raw["rate"]))


@dataclass(frozen=True)
class PricingConfig:
    """Explicit pricing wiring, resolved once at startup.

    components: component id -> price hops (chained in order)
    holdings:   component id -> base units backing ONE basket unit
    """

    components: Dict[str, Tuple[HopSpec, ...]] = field(default_factory=dict)
    holdings: Dict[str, int] = field(default_factory=dict)
    max_workers: int = 8
    timeout_s: Optional[float] = None

    @classmethod
    def from_json(cls, raw: Any) -> "PricingConfig":
        if raw is None:
            return cls()
        if not isinstance(raw, dict):
            raise ValueError("pricing config must be a JSON object")
        comps_raw = raw.get("components") or {}
        if not isinstance(comps_raw, dict):
            raise ValueError("pricing.components must be an object")
        components: Dict[str, Tuple[HopSpec, ...]] = {}
        for cid, hops in comps_raw.items():
            if not isinstance(hops, list):
                hops = [hops]
            components[str(cid)] = tuple(HopSpec.from_json(h, component_id=str(cid)) for h in hops)

        holdings_raw = raw.get("holdings") or {}
        if not isinstance(holdings_raw, dict):
            raise ValueError("pricing.holdings must be an object")
        holdings = {str(cid): parse_units(q) for cid, q in holdings_raw.items()}

        return cls(
            components=components,
            holdings=holdings,
            max_workers=_as_int(raw.get("max_workers"), 8),
            timeout_s=_as_float_or_none(raw.get("timeout_s")),
        )

    def build_component_pricing(self) -> Dict[str, ComponentPricing]:
        out: Dict[str, ComponentPricing] = {}
        for cid, hops in self.components.items():
            sources = tuple(StaticRateSource(h.rate, name=f"{cid}#{i}") for i, h in enumerate(hops))
            out[cid] = ComponentPricing(component_id=cid, hops=sources)
        return out


@dataclass(frozen=True)
class EngineConfig:
    mode: str  # "dev" | "testnet" | "prod"

    # Single SQLite DB file path for ledger persistence; "" keeps state in memory.
    db_path: str

    basket_id: str
    funding_component_id: str

    cooldown_seconds: int
    slippage_bps: int

    api_host: str
    api_port: int

    loop_enabled: bool
    loop_interval_ms: int

    # Simulated execution knobs (dev/testnet only)
    execution_kind: str
    market_slippage_bps: int

    log_level: str

    pricing: PricingConfig = field(default_factory=PricingConfig)


_ALLOWED_MODES = {"dev", "testnet", "prod"}
_ALLOWED_EXECUTION = {"simulated", "external"}


def validate_engine_config(cfg: EngineConfig) -> None:
    """Fail-fast validation for operator config."""

    mode = str(cfg.mode or "").strip().lower()
    if mode not in _ALLOWED_MODES:
        raise ValueError(f"mode must be one of {_ALLOWED_MODES}; got: {cfg.mode!r}")

    for name, v in (("basket_id", cfg.basket_id), ("funding_component_id", cfg.funding_component_id)):
        if not isinstance(v, str) or not v.strip():
            raise ValueError(f"{name} must be a non-empty string")

    if int(cfg.cooldown_seconds) < 0:
        raise ValueError(f"cooldown_seconds must be >= 0; got: {cfg.cooldown_seconds}")

    if int(cfg.slippage_bps) < 0 or int(cfg.slippage_bps) >= BPS_DENOMINATOR:
        raise ValueError(f"slippage_bps must be in [0, {BPS_DENOMINATOR}); got: {cfg.slippage_bps}")

    if int(cfg.api_port) <= 0 or int(cfg.api_port) > 65535:
        raise ValueError(f"api_port must be 1..65535; got: {cfg.api_port}")

    if int(cfg.loop_interval_ms) < 250:
        # Too-low intervals create tight loops against price sources.
        raise ValueError(f"loop_interval_ms must be >= 250; got: {cfg.loop_interval_ms}")

    kind = str(cfg.execution_kind or "").strip().lower()
    if kind not in _ALLOWED_EXECUTION:
        raise ValueError(f"execution_kind must be one of {_ALLOWED_EXECUTION}; got: {cfg.execution_kind!r}")
    if kind == "simulated" and mode == "prod":
        raise ValueError("simulated execution is not allowed in prod mode")

    if int(cfg.market_slippage_bps) < 0 or int(cfg.market_slippage_bps) >= BPS_DENOMINATOR:
        raise ValueError(f"market_slippage_bps must be in [0, {BPS_DENOMINATOR}); got: {cfg.market_slippage_bps}")

    pricing = cfg.pricing
    if cfg.funding_component_id not in pricing.components:
        raise ValueError(f"funding component {cfg.funding_component_id!r} has no price hops configured")
    for cid in pricing.holdings:
        if cid not in pricing.components:
            raise ValueError(f"basket component {cid!r} has no price hops configured")
    for cid, hops in pricing.components.items():
        if not hops:
            raise ValueError(f"component {cid!r} must declare at least one price hop")
    if int(pricing.max_workers) <= 0:
        raise ValueError(f"pricing.max_workers must be > 0; got: {pricing.max_workers}")


def default_pricing_config() -> PricingConfig:
    # Two-component basket over 3CRV metapools, priced as vault share x pool virtual price.
    return PricingConfig.from_json(
        {
            "components": {
                "3crv": [{"kind": "static", "rate": "1.02"}],
                "yvcrvfrax": [{"kind": "static", "rate": "1.05"}, {"kind": "static", "rate": "1.01"}],
                "yvcrvmim": [{"kind": "static", "rate": "1.04"}, {"kind": "static", "rate": "1.02"}],
            },
            "holdings": {"yvcrvfrax": "48", "yvcrvmim": "48"},
        }
    )


def default_engine_config() -> EngineConfig:
    return EngineConfig(
        mode="dev",
        db_path="./data/basketbatch.db",
        basket_id="butter",
        funding_component_id="3crv",
        cooldown_seconds=DEFAULT_COOLDOWN_SECONDS,
        slippage_bps=DEFAULT_SLIPPAGE_BPS,
        api_host="127.0.0.1",
        api_port=8080,
        loop_enabled=False,
        loop_interval_ms=30_000,
        execution_kind="simulated",
        market_slippage_bps=0,
        log_level="INFO",
        pricing=default_pricing_config(),
    )


def _read_raw(path: str) -> Json:
    p = Path(path)
    text = p.read_text(encoding="utf-8")
    if p.suffix.lower() in {".yaml", ".yml"}:
        import yaml

        raw = yaml.safe_load(text)
    else:
        raw = json.loads(text)
    if not isinstance(raw, dict):
        raise ValueError("engine config must be a mapping at the top level")
    return raw


def engine_config_from_dict(raw: Json) -> EngineConfig:
    d = default_engine_config()
    pricing = PricingConfig.from_json(raw["pricing"]) if "pricing" in raw else d.pricing
    execution = raw.get("execution") if isinstance(raw.get("execution"), dict) else {}

    cfg = EngineConfig(
        mode=_as_str(raw.get("mode"), d.mode).strip().lower(),
        db_path=str(raw.get("db_path", d.db_path) or ""),
        basket_id=_as_str(raw.get("basket_id"), d.basket_id),
        funding_component_id=_as_str(raw.get("funding_component_id"), d.funding_component_id),
        cooldown_seconds=_as_int(raw.get("cooldown_seconds"), d.cooldown_seconds),
        slippage_bps=_as_int(raw.get("slippage_bps"), d.slippage_bps),
        api_host=_as_str(raw.get("api_host"), d.api_host),
        api_port=_as_int(raw.get("api_port"), d.api_port),
        loop_enabled=_as_bool(raw.get("loop_enabled"), d.loop_enabled),
        loop_interval_ms=_as_int(raw.get("loop_interval_ms"), d.loop_interval_ms),
        execution_kind=_as_str(execution.get("kind"), d.execution_kind).strip().lower(),
        market_slippage_bps=_as_int(execution.get("market_slippage_bps"), d.market_slippage_bps),
        log_level=_as_str(raw.get("log_level"), d.log_level).strip().upper(),
        pricing=pricing,
    )
    validate_engine_config(cfg)
    return cfg


def read_engine_config_file(path: str) -> EngineConfig:
    return engine_config_from_dict(_read_raw(path))


def _apply_env_overrides(cfg: EngineConfig) -> EngineConfig:
    raw: Json = {}
    for key, env in (
        ("mode", "BASKETBATCH_MODE"),
        ("db_path", "BASKETBATCH_DB_PATH"),
        ("log_level", "BASKETBATCH_LOG_LEVEL"),
        ("api_host", "BASKETBATCH_API_HOST"),
        ("api_port", "BASKETBATCH_API_PORT"),
        ("cooldown_seconds", "BASKETBATCH_COOLDOWN_SECONDS"),
        ("slippage_bps", "BASKETBATCH_SLIPPAGE_BPS"),
        ("loop_enabled", "BASKETBATCH_LOOP_ENABLED"),
    ):
        v = os.environ.get(env)
        if v is not None:
            raw[key] = v
    if not raw:
        return cfg

    merged = EngineConfig(
        mode=_as_str(raw.get("mode"), cfg.mode).strip().lower(),
        db_path=str(raw.get("db_path", cfg.db_path) or ""),
        basket_id=cfg.basket_id,
        funding_component_id=cfg.funding_component_id,
        cooldown_seconds=_as_int(raw.get("cooldown_seconds"), cfg.cooldown_seconds),
        slippage_bps=_as_int(raw.get("slippage_bps"), cfg.slippage_bps),
        api_host=_as_str(raw.get("api_host"), cfg.api_host),
        api_port=_as_int(raw.get("api_port"), cfg.api_port),
        loop_enabled=_as_bool(raw.get("loop_enabled"), cfg.loop_enabled),
        loop_interval_ms=cfg.loop_interval_ms,
        execution_kind=cfg.execution_kind,
        market_slippage_bps=cfg.market_slippage_bps,
        log_level=_as_str(raw.get("log_level"), cfg.log_level).strip().upper(),
        pricing=cfg.pricing,
    )
    validate_engine_config(merged)
    return merged


def load_engine_config(*, config_path: Optional[str] = None) -> EngineConfig:
    p = config_path or os.environ.get("BASKETBATCH_CONFIG_PATH")
    if p:
        return _apply_env_overrides(read_engine_config_file(p))

    cfg = default_engine_config()
    validate_engine_config(cfg)
    return _apply_env_overrides(cfg)
