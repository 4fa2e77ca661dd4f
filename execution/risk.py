"""
Perps Risk Controls — per-position exit rules and the account-level guard.

Per position (RiskEvaluator), fixed priority, first match wins:
  1. MAX_HOLD_TIME   held ≥ max_holding_hours (36h)
  2. STOP_LOSS       leveraged PnL% ≤ leverage-tier stop (or SL price override hit)
  3. TRAILING_STOP   PnL% fell below the floor earned by the peak
                       peak ≥ 25 → 15 | ≥ 15 → 8 | ≥ 8 → 3
  4. PEAK_DRAWDOWN   peak > 5 and (peak − now) / peak ≥ 30%
  5. TAKE_PROFIT     profit-target price override hit

Account level (AccountGuard):
  absolute stop-loss / take-profit balance → FORCE_CLOSE_ALL
  drawdown from peak balance ≥ force / block-new / warning thresholds

Thresholds live in an explicit RiskConfig that callers pass in; nothing here
reads configuration on its own.
"""
import math
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional
from loguru import logger

import config


# ── Strategy presets ─────────────────────────────────────────────────
@dataclass(frozen=True)
class StrategyParams:
    name:          str
    leverage_min:  int
    leverage_max:  int
    stop_loss_low:  float    # leveraged PnL% thresholds, negative
    stop_loss_mid:  float
    stop_loss_high: float


STRATEGY_NAMES = ('conservative', 'balanced', 'aggressive')


def _ceil(x: float) -> int:
    # 10 × 0.3 must give 3, not 4
    return math.ceil(round(x, 9))


def get_strategy_params(name: str, max_leverage: int) -> StrategyParams:
    """Leverage band and stop-loss tiers for a strategy, scaled to max_leverage."""
    if name not in STRATEGY_NAMES:
        logger.warning(f'[RISK] Unknown strategy {name!r} — using balanced')
        name = 'balanced'

    if name == 'conservative':
        return StrategyParams(
            name=name,
            leverage_min=max(1, _ceil(max_leverage * 0.3)),
            leverage_max=max(2, _ceil(max_leverage * 0.6)),
            stop_loss_low=-3.5, stop_loss_mid=-3.0, stop_loss_high=-2.5,
        )
    if name == 'aggressive':
        return StrategyParams(
            name=name,
            leverage_min=max(3, _ceil(max_leverage * 0.85)),
            leverage_max=max_leverage,
            stop_loss_low=-2.5, stop_loss_mid=-2.0, stop_loss_high=-1.5,
        )
    return StrategyParams(
        name=name,
        leverage_min=max(2, _ceil(max_leverage * 0.6)),
        leverage_max=max(3, _ceil(max_leverage * 0.85)),
        stop_loss_low=-3.0, stop_loss_mid=-2.5, stop_loss_high=-2.0,
    )


# ── Risk configuration ───────────────────────────────────────────────
# system_config keys persisted by sync/load
_CONFIG_KEYS = {
    'account_stop_loss_usdt':   'account_stop_loss_abs',
    'account_take_profit_usdt': 'account_take_profit_abs',
}


@dataclass(frozen=True)
class RiskConfig:
    strategy:                StrategyParams
    account_stop_loss_abs:   float = 50.0
    account_take_profit_abs: float = 10000.0
    drawdown_warning_pct:    float = 10.0
    drawdown_block_new_pct:  float = 15.0
    drawdown_force_close_pct: float = 20.0
    max_holding_hours:       float = 36.0
    max_positions:           int = 5
    max_adds_per_symbol:     int = 2
    max_add_fraction:        float = 0.5
    max_exposure_multiple:   float = 10.0
    sync_on_startup:         bool = False

    @classmethod
    def from_env(cls) -> 'RiskConfig':
        return cls(
            strategy=get_strategy_params(config.TRADING_STRATEGY, config.MAX_LEVERAGE),
            account_stop_loss_abs=config.ACCOUNT_STOP_LOSS_USDT,
            account_take_profit_abs=config.ACCOUNT_TAKE_PROFIT_USDT,
            drawdown_warning_pct=config.DRAWDOWN_WARNING_PCT,
            drawdown_block_new_pct=config.DRAWDOWN_NO_NEW_PCT,
            drawdown_force_close_pct=config.DRAWDOWN_FORCE_CLOSE_PCT,
            max_holding_hours=config.MAX_HOLDING_HOURS,
            max_positions=config.MAX_POSITIONS,
            max_adds_per_symbol=config.MAX_ADDS_PER_SYMBOL,
            max_add_fraction=config.MAX_ADD_FRACTION,
            max_exposure_multiple=config.MAX_EXPOSURE_MULTIPLE,
            sync_on_startup=config.SYNC_CONFIG_ON_STARTUP,
        )


def resolve_risk_config(store, base: RiskConfig) -> RiskConfig:
    """
    Either push the env thresholds into system_config (sync_on_startup) or
    overlay previously persisted thresholds on top of them.
    """
    if base.sync_on_startup:
        for key, attr in _CONFIG_KEYS.items():
            store.set_config(key, getattr(base, attr))
        logger.info(
            f'[RISK] Synced account thresholds to store: '
            f'SL ${base.account_stop_loss_abs:.2f} | TP ${base.account_take_profit_abs:.2f}'
        )
        return base

    overrides = {}
    for key, attr in _CONFIG_KEYS.items():
        raw = store.get_config(key)
        if raw is None:
            continue
        try:
            overrides[attr] = float(raw)
        except ValueError:
            logger.warning(f'[RISK] Ignoring unparseable {key}={raw!r} in store')
    if overrides:
        logger.info(f'[RISK] Loaded persisted thresholds: {overrides}')
        return replace(base, **overrides)
    return base


# ── Per-position evaluation ──────────────────────────────────────────
class CloseReason(str, Enum):
    MAX_HOLD_TIME = 'MAX_HOLD_TIME'
    STOP_LOSS     = 'STOP_LOSS'
    TRAILING_STOP = 'TRAILING_STOP'
    PEAK_DRAWDOWN = 'PEAK_DRAWDOWN'
    TAKE_PROFIT   = 'TAKE_PROFIT'


PEAK_DRAWDOWN_MIN_PEAK = 5.0     # rule only active once peak PnL% exceeded this
PEAK_DRAWDOWN_PCT      = 30.0
TRAILING_STEPS = ((25.0, 15.0), (15.0, 8.0), (8.0, 3.0))   # (peak ≥, floor)


@dataclass
class RiskDecision:
    close:             bool
    reason:            Optional[CloseReason]
    pnl_percent:       float
    peak_pnl_percent:  float
    stop_loss_percent: float
    matched:           list = field(default_factory=list)
    detail:            str = ''


def leveraged_pnl_percent(side: str, entry: float, price: float, leverage: float) -> float:
    if entry <= 0:
        return 0.0
    change = (price - entry) / entry * 100
    if side == 'short':
        change = -change
    # float noise would otherwise keep e.g. 100 → 100.8 @10x just under 8%
    return round(change * leverage, 8)


def stop_loss_threshold(leverage: float, strategy: StrategyParams) -> float:
    lev_mid = math.floor((strategy.leverage_min + strategy.leverage_max) / 2)
    lev_high = math.floor(strategy.leverage_min + (strategy.leverage_max - strategy.leverage_min) * 0.75)
    if leverage >= lev_high:
        return strategy.stop_loss_high
    if leverage >= lev_mid:
        return strategy.stop_loss_mid
    return strategy.stop_loss_low


def trailing_floor(peak_pnl_percent: float, stop_loss_percent: float) -> float:
    for threshold, floor in TRAILING_STEPS:
        if peak_pnl_percent >= threshold:
            return floor
    return stop_loss_percent


class RiskEvaluator:
    """
    Stateless rule engine. The caller persists `peak_pnl_percent` from the
    returned decision before acting on it.
    """

    def __init__(self, risk_config: RiskConfig):
        self.config = risk_config

    def evaluate(self, position, price: float, now: Optional[float] = None) -> RiskDecision:
        """
        Args:
            position: data.models.Position (uses side, entry, leverage, peak,
                      opened_at, optional stop_loss / profit_target)
            price:    current mark price
            now:      epoch seconds, defaults to time.time()

        Returns:
            RiskDecision. `matched` lists every rule that fired, in priority order.
        """
        now = time.time() if now is None else now
        strategy = self.config.strategy

        pnl = leveraged_pnl_percent(position.side, position.entry_price, price, position.leverage)
        peak = max(position.peak_pnl_percent, pnl)
        stop = stop_loss_threshold(position.leverage, strategy)
        floor = trailing_floor(peak, stop)
        held_hours = (now - position.opened_at) / 3600
        is_long = position.side == 'long'

        matched: list[tuple[CloseReason, str]] = []

        if held_hours >= self.config.max_holding_hours:
            matched.append((CloseReason.MAX_HOLD_TIME,
                            f'held {held_hours:.1f}h ≥ {self.config.max_holding_hours:.0f}h'))

        if pnl <= stop:
            matched.append((CloseReason.STOP_LOSS, f'PnL {pnl:.2f}% ≤ stop {stop:.2f}%'))
        elif position.stop_loss and (price <= position.stop_loss if is_long else price >= position.stop_loss):
            matched.append((CloseReason.STOP_LOSS, f'price {price} crossed stop {position.stop_loss}'))

        if floor > stop and pnl < floor:
            matched.append((CloseReason.TRAILING_STOP,
                            f'PnL {pnl:.2f}% < trailing floor {floor:.0f}% (peak {peak:.2f}%)'))

        if peak > PEAK_DRAWDOWN_MIN_PEAK:
            drawdown = (peak - pnl) / peak * 100
            if drawdown >= PEAK_DRAWDOWN_PCT:
                matched.append((CloseReason.PEAK_DRAWDOWN,
                                f'peak {peak:.2f}% → {pnl:.2f}%, drawdown {drawdown:.1f}%'))

        if position.profit_target and (price >= position.profit_target if is_long else price <= position.profit_target):
            matched.append((CloseReason.TAKE_PROFIT, f'price {price} reached target {position.profit_target}'))

        if not matched:
            return RiskDecision(False, None, pnl, peak, stop)

        if len(matched) > 1:
            logger.info(f'[RISK] {position.symbol} rules fired: {", ".join(r.value for r, _ in matched)}')
        reason, detail = matched[0]
        return RiskDecision(
            close=True, reason=reason, pnl_percent=pnl, peak_pnl_percent=peak,
            stop_loss_percent=stop, matched=[r for r, _ in matched], detail=detail,
        )


# ── Account guard ────────────────────────────────────────────────────
class GuardAction(str, Enum):
    NORMAL          = 'NORMAL'
    WARN            = 'WARN'
    BLOCK_NEW       = 'BLOCK_NEW'
    FORCE_CLOSE_ALL = 'FORCE_CLOSE_ALL'


@dataclass(frozen=True)
class GuardDecision:
    action:       GuardAction
    drawdown_pct: float
    reason:       str = ''

    @property
    def allows_new(self) -> bool:
        return self.action in (GuardAction.NORMAL, GuardAction.WARN)


class AccountGuard:
    """Gates the whole tick. Boundaries are inclusive (≥ threshold)."""

    def __init__(self, risk_config: RiskConfig):
        self.config = risk_config

    def evaluate(self, total_balance: float, initial_balance: Optional[float],
                 peak_balance: Optional[float]) -> GuardDecision:
        cfg = self.config
        peak = max(peak_balance or 0.0, initial_balance or 0.0, total_balance)
        drawdown = (peak - total_balance) / peak * 100 if peak > 0 else 0.0

        if total_balance <= cfg.account_stop_loss_abs:
            return GuardDecision(GuardAction.FORCE_CLOSE_ALL, drawdown,
                                 f'balance ${total_balance:.2f} ≤ stop-loss ${cfg.account_stop_loss_abs:.2f}')
        if total_balance >= cfg.account_take_profit_abs:
            return GuardDecision(GuardAction.FORCE_CLOSE_ALL, drawdown,
                                 f'balance ${total_balance:.2f} ≥ take-profit ${cfg.account_take_profit_abs:.2f}')

        if drawdown >= cfg.drawdown_force_close_pct:
            return GuardDecision(GuardAction.FORCE_CLOSE_ALL, drawdown,
                                 f'drawdown {drawdown:.2f}% ≥ {cfg.drawdown_force_close_pct:.0f}%')
        if drawdown >= cfg.drawdown_block_new_pct:
            return GuardDecision(GuardAction.BLOCK_NEW, drawdown,
                                 f'drawdown {drawdown:.2f}% ≥ {cfg.drawdown_block_new_pct:.0f}%')
        if drawdown >= cfg.drawdown_warning_pct:
            return GuardDecision(GuardAction.WARN, drawdown,
                                 f'drawdown {drawdown:.2f}% ≥ {cfg.drawdown_warning_pct:.0f}%')
        return GuardDecision(GuardAction.NORMAL, drawdown)
