"""
Position Manager — Perps Position Lifecycle Controller.

═══════════════════════════════════════════════════════════════
PURPOSE:
  Runs one tick of the lifecycle. Deterministic risk rules always act
  before the external decision generator gets a say.

TICK SEQUENCE:
  1. Collect market data (failed symbols are skipped for this tick)
  2. Account guard
       FORCE_CLOSE_ALL → close every position, write audit row, halt
       BLOCK_NEW       → opens from the generator are refused this tick
  3. Reconcile ledger with the venue
  4. Risk evaluator over every position (ascending symbol)
       peak PnL% persisted for every position, forced closes executed
  5. Re-reconcile after forced closes, run the historical PnL fixer
  6. Snapshot → decision generator → intents through the executor
       (guards are re-checked inside the executor at execution time)
  7. Reconcile again, write the tick audit row, run the PnL fixer again

USAGE:
  manager = PositionManager(venue=..., store=..., executor=..., ...)
  await manager.recover()          # on startup, before any tick
  outcome = await manager.run_tick()
  if outcome.halted:
      ...stop scheduling
═══════════════════════════════════════════════════════════════
"""
import asyncio
import time
from dataclasses import asdict, dataclass, field
from typing import Optional

import aiohttp
from loguru import logger

from data.market import MarketDataCollector, digest
from data.models import TickRecord
from execution.errors import TradingError, ValidationError
from execution.fee_model import HistoricalPnlFixer
from execution.order_executor import OrderExecutor
from execution.reconciler import PositionReconciler
from execution.risk import (
    AccountGuard, GuardAction, GuardDecision, RiskConfig, RiskEvaluator,
    leveraged_pnl_percent,
)
from monitoring.account_recorder import sharpe_ratio
from monitoring.trade_logger import count_by_reason
from signals.decision import Decision, DecisionGenerator, OpenIntent


RECENT_TRADES_IN_SNAPSHOT = 10
RECENT_AUDIT_IN_SNAPSHOT  = 50


@dataclass
class TickOutcome:
    iteration:     int
    guard:         Optional[GuardDecision] = None
    halted:        bool = False
    forced_closes: list = field(default_factory=list)
    actions:       list = field(default_factory=list)
    decision:      Optional[Decision] = None


class PositionManager:
    """
    Owns no state of its own beyond the current config: everything durable
    is in the ledger, everything authoritative is on the venue.
    """

    def __init__(
        self,
        venue,
        store,
        executor: OrderExecutor,
        reconciler: PositionReconciler,
        collector: MarketDataCollector,
        generator: DecisionGenerator,
        risk_config: RiskConfig,
        fixer: Optional[HistoricalPnlFixer] = None,
        audit=None,
        notifier=None,
    ):
        self.venue = venue
        self.store = store
        self.executor = executor
        self.reconciler = reconciler
        self.collector = collector
        self.generator = generator
        self.fixer = fixer
        self.audit = audit
        self.notifier = notifier
        self.risk_config = risk_config
        self.evaluator = RiskEvaluator(risk_config)
        self.guard = AccountGuard(risk_config)
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def reload_config(self, risk_config: RiskConfig):
        """Swap thresholds between ticks. Refused while a tick is in flight."""
        if self._running:
            raise ValidationError('tick_in_progress')
        self.risk_config = risk_config
        self.evaluator = RiskEvaluator(risk_config)
        self.guard = AccountGuard(risk_config)
        self.executor.update_config(risk_config)
        logger.info(f'[PM] Risk config reloaded — strategy {risk_config.strategy.name}')

    async def recover(self):
        """Reconcile against the venue before trusting anything in the ledger."""
        report = await self.reconciler.sync()
        logger.info(f'[PM] Recovered {len(report.positions)} positions from venue')
        return report

    # ── Tick ──────────────────────────────────────────────────────────
    async def run_tick(self) -> TickOutcome:
        self._running = True
        iteration = self.store.last_iteration() + 1
        outcome = TickOutcome(iteration=iteration)
        started = time.time()
        try:
            market = await self.collector.collect()
            account = await self.venue.get_account()
            guard = self.guard.evaluate(account.total_balance, self.store.initial_balance(),
                                        self.store.peak_balance())
            outcome.guard = guard

            if guard.action == GuardAction.FORCE_CLOSE_ALL:
                await self._force_close_all(outcome, guard, market, account.total_balance)
                return outcome
            if guard.action == GuardAction.WARN:
                logger.warning(f'[PM] Account warning: {guard.reason}')
            elif guard.action == GuardAction.BLOCK_NEW:
                logger.warning(f'[PM] New positions blocked this tick: {guard.reason}')

            await self._sync()
            outcome.forced_closes = await self._enforce_risk(market)
            if outcome.forced_closes:
                await self._sync()
            await self._fix_pnl()

            snapshot = self.build_snapshot(iteration, market, account, guard)
            decision = await self._decide(snapshot)
            outcome.decision = decision
            outcome.actions = await self._execute_intents(decision, guard)

            await self._sync()
            account_after = await self.venue.get_account()
            self.store.insert_tick(TickRecord(
                iteration=iteration,
                market_digest=digest(market),
                decision=decision.rationale,
                actions=outcome.forced_closes + outcome.actions,
                account_value=account_after.total_balance,
                positions_count=len(self.store.get_positions()),
            ))
            await self._fix_pnl()

            logger.info(
                f'[PM] Tick #{iteration} done in {time.time() - started:.1f}s | '
                f'forced {len(outcome.forced_closes)} | actions {len(outcome.actions)} | '
                f'balance ${account_after.total_balance:.2f}'
            )
            return outcome
        finally:
            self._running = False

    async def _force_close_all(self, outcome: TickOutcome, guard: GuardDecision, market, balance: float):
        logger.critical(f'[PM] Account guard FORCE_CLOSE_ALL: {guard.reason}')
        if self.notifier:
            self.notifier.schedule(self.notifier.notify_force_close_all(guard.reason, balance))
        results = await self.executor.close_all(f'account guard: {guard.reason}')
        outcome.actions = [r.to_dict() for r in results]
        await self._sync()
        self.store.insert_tick(TickRecord(
            iteration=outcome.iteration,
            market_digest=digest(market),
            decision=f'FORCE_CLOSE_ALL: {guard.reason}',
            actions=outcome.actions,
            account_value=balance,
            positions_count=len(self.store.get_positions()),
        ))
        outcome.halted = True

    async def _sync(self):
        try:
            await self.reconciler.sync()
        except TradingError as e:
            logger.error(f'[PM] Reconciliation failed, continuing on ledger state: {e}')

    async def _fix_pnl(self):
        if self.fixer is None:
            return
        try:
            await self.fixer.run()
        except TradingError as e:
            logger.warning(f'[PM] Historical PnL fix skipped: {e}')

    async def _enforce_risk(self, market: dict) -> list[dict]:
        forced = []
        now = time.time()
        for pos in sorted(self.store.get_positions(), key=lambda p: p.symbol):
            snap = market.get(pos.symbol)
            price = snap.price if snap is not None else pos.current_price
            if not price or price <= 0:
                logger.warning(f'[PM] {pos.symbol} has no usable price — risk check skipped')
                continue

            decision = self.evaluator.evaluate(pos, price, now=now)
            peak = self.store.ratchet_peak(pos.symbol, decision.pnl_percent)
            logger.debug(f'[RISK] {pos.symbol} {pos.side} PnL {decision.pnl_percent:+.2f}% | '
                         f'peak {peak:.2f}% | stop {decision.stop_loss_percent:.1f}%')
            if not decision.close:
                continue

            logger.warning(f'[PM] Forced close {pos.symbol}: {decision.reason.value} — {decision.detail}')
            result = await self.executor.close_position(pos.symbol, 100, reason=decision.reason.value)
            forced.append({'forced': decision.reason.value, 'detail': decision.detail, **result.to_dict()})
        return forced

    async def _decide(self, snapshot: dict) -> Decision:
        try:
            return await self.generator.decide(snapshot)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError, KeyError) as e:
            logger.error(f'[PM] Decision generator failed, holding this tick: {e}')
            return Decision(rationale=f'decision generator unavailable: {e}')

    async def _execute_intents(self, decision: Decision, guard: GuardDecision) -> list[dict]:
        actions = []
        for intent in decision.intents:
            if isinstance(intent, OpenIntent):
                if not guard.allows_new:
                    logger.warning(f'[PM] Open {intent.symbol} refused: {guard.reason}')
                    if self.audit:
                        self.audit.record('rejected', intent.symbol, 'blocked_new_positions',
                                          action='open', detail=guard.reason)
                    actions.append({'intent': asdict(intent), 'success': False,
                                    'symbol': intent.symbol, 'reason': 'blocked_new_positions'})
                    continue
                result = await self.executor.open_position(
                    intent.symbol, intent.side, intent.leverage, intent.amount,
                    stop_loss=intent.stop_loss, profit_target=intent.profit_target,
                )
            else:
                result = await self.executor.close_position(intent.symbol, intent.percentage, reason='decision')
            actions.append({'intent': asdict(intent), **result.to_dict()})
        return actions

    # ── Snapshot ──────────────────────────────────────────────────────
    def build_snapshot(self, iteration: int, market: dict, account, guard: GuardDecision) -> dict:
        """Everything the decision generator sees, as plain JSON-able data."""
        now = time.time()
        initial = self.store.initial_balance() or account.total_balance
        strategy = self.risk_config.strategy

        positions = []
        for pos in self.store.get_positions():
            snap = market.get(pos.symbol)
            price = snap.price if snap is not None else pos.current_price
            positions.append({
                **pos.to_dict(),
                'current_price': price,
                'pnl_percent': leveraged_pnl_percent(pos.side, pos.entry_price, price, pos.leverage),
                'holding_hours': round((now - pos.opened_at) / 3600, 2),
                'hours_remaining': round(max(0.0, self.risk_config.max_holding_hours
                                             - (now - pos.opened_at) / 3600), 2),
            })

        recent_audit = self.audit.load_recent(RECENT_AUDIT_IN_SNAPSHOT) if self.audit else []
        return {
            'iteration': iteration,
            'timestamp': now,
            'strategy': asdict(strategy),
            'market': {s: m.summary() for s, m in sorted(market.items())},
            'account': {
                'total_balance': account.total_balance,
                'available_balance': account.available_balance,
                'unrealized_pnl': account.unrealized_pnl,
                'initial_balance': initial,
                'return_percent': (account.total_balance - initial) / initial * 100 if initial else 0.0,
                'drawdown_percent': guard.drawdown_pct,
                'guard': guard.action.value,
                'sharpe_ratio': sharpe_ratio(self.store.snapshots(limit=500)),
            },
            'positions': positions,
            'recent_trades': [t.to_dict() for t in self.store.recent_trades(RECENT_TRADES_IN_SNAPSHOT)],
            'last_decision': self.store.last_tick(),
            'recent_rejections': count_by_reason(recent_audit),
            'new_positions_allowed': guard.allows_new,
        }
