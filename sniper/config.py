import logging
import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple

import yaml

from .errors import ConfigError

log = logging.getLogger(__name__)

SUPPORTED_CHAINS = ("LTC", "BTC", "SOL", "ETH")

DEFAULT_TEMPLATES = {
    "bet_offer": "vs {calculated}",
    "insufficient_funds": "Insufficient funds",
    "payment_sent": "Sent {amount} {chain} to the middleman. TX: {txid}",
    "payout_request": "GG! Send {amount} {chain} to:",
    "vouch_win": "+vouch won {amount} {chain} vs {opponent}, mm {middleman}",
    "game_lost": "GG, well played!",
    "cancelled": "Received. Ticket cancelled.",
}


@dataclass(frozen=True)
class RpcSettings:
    timeout_s: float = 15.0
    retries: int = 3
    backoff_s: float = 0.5
    ltc_url: Optional[str] = None
    ltc_user: Optional[str] = None
    ltc_password: Optional[str] = None
    btc_url: Optional[str] = None
    btc_user: Optional[str] = None
    btc_password: Optional[str] = None
    sol_url: Optional[str] = None
    sol_private_key: Optional[str] = None
    eth_url: Optional[str] = None
    evm_private_key: Optional[str] = None
    evm_scan_blocks: int = 50

    def __repr__(self) -> str:
        # keys and passwords stay out of logs
        return f"RpcSettings(timeout_s={self.timeout_s}, retries={self.retries})"


@dataclass(frozen=True)
class Settings:
    middleman_ids: FrozenSet[str] = frozenset()
    monitored_public_ids: FrozenSet[str] = frozenset()
    vouch_channel_id: Optional[str] = None
    operator_channel_id: Optional[str] = None
    ticket_name_patterns: Tuple[str, ...] = ("ticket", "order-")
    excluded_name_patterns: Tuple[str, ...] = ("bot-commands", "rules", "announcements")
    chain: str = "LTC"
    target_wins: int = 5
    dice_command: str = "!roll"
    bot_wins_ties: bool = True
    markup: Decimal = Decimal("0.10")
    tax_percentage: Decimal = Decimal("0")
    min_bet: Decimal = Decimal("1")
    max_bet: Decimal = Decimal("100")
    max_payment_per_tx: Optional[Decimal] = None
    max_daily_spend: Optional[Decimal] = None
    simulation_mode: bool = False
    address_patterns: Mapping[str, str] = field(default_factory=dict)
    verify_address_checksums: bool = False
    payout_addresses: Mapping[str, str] = field(default_factory=dict)
    scan_interval_ms: int = 15_000
    cooldown_ms: int = 300_000
    pending_wager_ttl_ms: int = 600_000
    lock_timeout_ms: int = 30_000
    payout_skew_ms: int = 120_000
    payout_grace_ms: int = 5_000
    stale_ticket_ms: int = 3_600_000
    housekeeping_interval_ms: int = 300_000
    finished_ticket_retention_ms: int = 86_400_000
    error_ticket_retention_ms: int = 604_800_000
    message_spacing_ms: int = 0
    state_path: Path = Path("data/state.json")
    persistence_debounce_ms: int = 250
    cancellation_keywords: Tuple[str, ...] = ("cancel", "void", "abort", "refund")
    templates: Mapping[str, str] = field(default_factory=lambda: dict(DEFAULT_TEMPLATES))
    rpc: RpcSettings = field(default_factory=RpcSettings)

    def is_middleman(self, user_id: Any) -> bool:
        return str(user_id) in self.middleman_ids

    def template(self, name: str) -> str:
        return self.templates.get(name) or DEFAULT_TEMPLATES[name]


def _id_set(value: Any) -> FrozenSet[str]:
    if value is None:
        return frozenset()
    if isinstance(value, (str, int)):
        value = [value]
    return frozenset(str(item).strip() for item in value if str(item).strip())


def _decimal(value: Any, name: str, default: Optional[Decimal]) -> Optional[Decimal]:
    if value is None:
        return default
    try:
        parsed = Decimal(str(value))
    except InvalidOperation as exc:
        raise ConfigError(f"{name} is not a number: {value!r}") from exc
    if parsed < 0:
        raise ConfigError(f"{name} must not be negative")
    return parsed


def _int(value: Any, name: str, default: int) -> int:
    if value is None:
        return default
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} is not an integer: {value!r}") from exc
    if parsed < 0:
        raise ConfigError(f"{name} must not be negative")
    return parsed


def _section(raw: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = raw.get(key) or {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"{key} must be a mapping")
    return value


def _strings(value: Any, default: Tuple[str, ...]) -> Tuple[str, ...]:
    if not value:
        return default
    if isinstance(value, str):
        value = [value]
    return tuple(str(item).strip().lower() for item in value if str(item).strip())


def settings_from_mapping(raw: Mapping[str, Any], env: Optional[Mapping[str, str]] = None) -> Settings:
    """Build validated settings from a parsed config document plus environment."""
    env = os.environ if env is None else env
    if not isinstance(raw, Mapping):
        raise ConfigError("config root must be a mapping")

    channels = _section(raw, "channels")
    game = _section(raw, "game_settings")
    limits = _section(raw, "bet_limits")
    safety = _section(raw, "payment_safety")
    persistence = _section(raw, "persistence")
    rpc_raw = _section(raw, "rpc")

    chain = str(raw.get("chain") or "LTC").upper()
    if chain not in SUPPORTED_CHAINS:
        raise ConfigError(f"unsupported chain {chain}")

    markup = _decimal(raw.get("markup"), "markup", Decimal("0.10"))
    tax = _decimal(raw.get("tax_percentage"), "tax_percentage", Decimal("0"))
    if tax >= 1:
        raise ConfigError("tax_percentage must be below 1")

    target_wins = _int(game.get("target_wins"), "game_settings.target_wins", 5)
    if target_wins < 1:
        raise ConfigError("game_settings.target_wins must be at least 1")

    min_bet = _decimal(limits.get("min"), "bet_limits.min", Decimal("1"))
    max_bet = _decimal(limits.get("max"), "bet_limits.max", Decimal("100"))
    if min_bet > max_bet:
        raise ConfigError("bet_limits.min exceeds bet_limits.max")

    patterns = {str(k).upper(): str(v) for k, v in (raw.get("address_patterns") or {}).items()}
    payout_addresses: Dict[str, str] = {
        str(k).upper(): str(v) for k, v in (raw.get("payout_addresses") or {}).items() if v
    }
    for name in SUPPORTED_CHAINS:
        override = env.get(f"{name}_PAYOUT_ADDRESS")
        if override:
            payout_addresses[name] = override.strip()

    templates = dict(DEFAULT_TEMPLATES)
    templates.update({str(k): str(v) for k, v in (raw.get("response_templates") or {}).items()})

    rpc = RpcSettings(
        timeout_s=float(rpc_raw.get("timeout_s", 15.0)),
        retries=_int(rpc_raw.get("retries"), "rpc.retries", 3),
        backoff_s=float(rpc_raw.get("backoff_s", 0.5)),
        ltc_url=rpc_raw.get("ltc_url"),
        ltc_user=rpc_raw.get("ltc_user"),
        ltc_password=env.get("LTC_RPC_PASSWORD"),
        btc_url=rpc_raw.get("btc_url"),
        btc_user=rpc_raw.get("btc_user"),
        btc_password=env.get("BTC_RPC_PASSWORD"),
        sol_url=rpc_raw.get("sol_url"),
        sol_private_key=env.get("SOL_PRIVATE_KEY"),
        eth_url=rpc_raw.get("eth_url"),
        evm_private_key=env.get("EVM_PRIVATE_KEY"),
        evm_scan_blocks=_int(rpc_raw.get("evm_scan_blocks"), "rpc.evm_scan_blocks", 50),
    )

    return Settings(
        middleman_ids=_id_set(raw.get("middleman_ids")),
        monitored_public_ids=_id_set(channels.get("monitored_public_ids")),
        vouch_channel_id=str(channels["vouch_channel_id"]) if channels.get("vouch_channel_id") else None,
        operator_channel_id=(
            str(channels["operator_channel_id"]) if channels.get("operator_channel_id") else None
        ),
        ticket_name_patterns=_strings(channels.get("ticket_name_patterns"), ("ticket", "order-")),
        excluded_name_patterns=_strings(
            channels.get("excluded_name_patterns"), ("bot-commands", "rules", "announcements")
        ),
        chain=chain,
        target_wins=target_wins,
        dice_command=str(game.get("dice_command") or "!roll"),
        bot_wins_ties=bool(game.get("bot_wins_ties", True)),
        markup=markup,
        tax_percentage=tax,
        min_bet=min_bet,
        max_bet=max_bet,
        max_payment_per_tx=_decimal(safety.get("max_payment_per_tx"), "payment_safety.max_payment_per_tx", None),
        max_daily_spend=_decimal(safety.get("max_daily_spend"), "payment_safety.max_daily_spend", None),
        simulation_mode=bool(raw.get("simulation_mode", False)),
        address_patterns=patterns,
        verify_address_checksums=bool(raw.get("verify_address_checksums", False)),
        payout_addresses=payout_addresses,
        scan_interval_ms=_int(raw.get("scan_interval_ms"), "scan_interval_ms", 15_000),
        cooldown_ms=_int(raw.get("cooldown_ms"), "cooldown_ms", 300_000),
        pending_wager_ttl_ms=_int(raw.get("pending_wager_ttl_ms"), "pending_wager_ttl_ms", 600_000),
        lock_timeout_ms=_int(raw.get("lock_timeout_ms"), "lock_timeout_ms", 30_000),
        payout_skew_ms=_int(raw.get("payout_skew_ms"), "payout_skew_ms", 120_000),
        payout_grace_ms=_int(raw.get("payout_grace_ms"), "payout_grace_ms", 5_000),
        stale_ticket_ms=_int(raw.get("stale_ticket_ms"), "stale_ticket_ms", 3_600_000),
        housekeeping_interval_ms=_int(
            raw.get("housekeeping_interval_ms"), "housekeeping_interval_ms", 300_000
        ),
        finished_ticket_retention_ms=_int(
            raw.get("finished_ticket_retention_ms"), "finished_ticket_retention_ms", 86_400_000
        ),
        error_ticket_retention_ms=_int(
            raw.get("error_ticket_retention_ms"), "error_ticket_retention_ms", 604_800_000
        ),
        message_spacing_ms=_int(raw.get("message_spacing_ms"), "message_spacing_ms", 0),
        state_path=Path(persistence.get("path") or "data/state.json"),
        persistence_debounce_ms=_int(persistence.get("debounce_ms"), "persistence.debounce_ms", 250),
        cancellation_keywords=_strings(
            raw.get("cancellation_keywords"), ("cancel", "void", "abort", "refund")
        ),
        templates=templates,
        rpc=rpc,
    )


def load_settings(path: Optional[str] = None, env: Optional[Mapping[str, str]] = None) -> Settings:
    env = os.environ if env is None else env
    config_path = Path(path or env.get("SNIPER_CONFIG") or "config.yaml")
    if not config_path.exists():
        raise ConfigError(f"config file not found: {config_path}")
    try:
        raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"failed to parse {config_path}: {exc}") from exc
    settings = settings_from_mapping(raw, env)
    log.info(
        "config loaded from %s (chain=%s, simulation=%s, middlemen=%d)",
        config_path,
        settings.chain,
        settings.simulation_mode,
        len(settings.middleman_ids),
    )
    return settings
