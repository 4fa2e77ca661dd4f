"""
Perps Lifecycle Engine — Main Event Loop

Architecture:
  - asyncio tasks: (1) tick scheduler, (2) account recorder, (3) status logger
  - Scheduler fires one lifecycle tick every TRADING_INTERVAL_MINUTES;
    an overlapping trigger is skipped, never queued
  - Account recorder snapshots the balance every ACCOUNT_RECORD_INTERVAL_MINUTES

Startup:
  1. Open ledger, resolve risk thresholds (env ↔ system_config)
  2. Build venue / executor / reconciler / controller (explicitly wired)
  3. Seed initial balance, reconcile positions against the venue
  4. Start loops; SIGINT / SIGTERM stop them cleanly
"""
import asyncio
import signal
from loguru import logger

from config import (
    EXCHANGE, PAPER_TRADE, PAPER_BALANCE, GATE_API_KEY, GATE_API_SECRET,
    SYMBOLS, CANDLE_INTERVAL, CANDLE_LIMIT, TAKER_FEE,
    TRADING_INTERVAL_MINUTES, ACCOUNT_RECORD_INTERVAL_MINUTES,
    DATABASE_PATH, TRADE_AUDIT_PATH, INITIAL_BALANCE, RECONCILE_CONFIRM_DELAY,
    DECISION_URL, DECISION_API_KEY, DECISION_TIMEOUT,
    TELEGRAM_TOKEN, TELEGRAM_CHAT_ID, LOG_LEVEL,
)
from data.market import MarketDataCollector
from data.store import LedgerStore
from execution.contracts import ContractBook
from execution.errors import TradingError
from execution.fee_model import HistoricalPnlFixer
from execution.order_executor import OrderExecutor
from execution.position_manager import PositionManager
from execution.reconciler import PositionReconciler
from execution.risk import RiskConfig, resolve_risk_config
from execution.scheduler import TickScheduler
from execution.venue_client import GateVenue, PaperVenue, VenueClient
from monitoring.account_recorder import AccountRecorder
from monitoring.telegram import TelegramNotifier
from monitoring.trade_logger import TradeAuditLog
from signals.decision import HoldDecisionGenerator, HttpDecisionGenerator

logger.remove()
logger.add(
    'logs/lifecycle.log',
    level=LOG_LEVEL,
    rotation='50 MB',
    retention='7 days',
    format='{time:HH:mm:ss.SSS} | {level:<7} | {message}',
)
logger.add(
    lambda msg: print(msg, end=''),
    level='INFO',
    format='{time:HH:mm:ss} | {level:<7} | {message}',
)


def build_venue() -> VenueClient:
    gate = GateVenue(GATE_API_KEY, GATE_API_SECRET)
    if PAPER_TRADE or EXCHANGE == 'paper':
        return PaperVenue(market=gate, balance=INITIAL_BALANCE or PAPER_BALANCE, fee_rate=TAKER_FEE)
    if EXCHANGE != 'gate':
        raise SystemExit(f'Unsupported EXCHANGE={EXCHANGE!r} (gate | paper)')
    return gate


# ── Background loops ──────────────────────────────────────────────────
async def record_account(recorder: AccountRecorder, stop: asyncio.Event):
    """Snapshot the account every ACCOUNT_RECORD_INTERVAL_MINUTES."""
    while not stop.is_set():
        try:
            await recorder.record()
        except TradingError as e:
            logger.warning(f'[RECORDER] Snapshot failed: {e}')
        try:
            await asyncio.wait_for(stop.wait(), timeout=ACCOUNT_RECORD_INTERVAL_MINUTES * 60)
        except asyncio.TimeoutError:
            pass


async def log_status(store: LedgerStore, scheduler: TickScheduler, stop: asyncio.Event):
    """Log a brief status line every 60s."""
    while not stop.is_set():
        try:
            await asyncio.wait_for(stop.wait(), timeout=60)
        except asyncio.TimeoutError:
            pass
        positions = store.get_positions()
        logger.info(
            f'[STATUS] Open={len(positions)} {[p.symbol for p in positions]} | '
            f'Ticks={scheduler.completed} Skipped={scheduler.skipped} | '
            f'Busy={"YES" if scheduler.busy else "no"}'
        )


# ── Graceful Shutdown ─────────────────────────────────────────────────
def _handle_shutdown(scheduler: TickScheduler, stop: asyncio.Event):
    logger.warning('[MAIN] Shutdown signal received — stopping...')
    scheduler.stop()
    stop.set()


# ── Entry Point ───────────────────────────────────────────────────────
async def main():
    store = LedgerStore(DATABASE_PATH)
    risk_config = resolve_risk_config(store, RiskConfig.from_env())
    venue = build_venue()
    audit = TradeAuditLog(TRADE_AUDIT_PATH)
    notifier = TelegramNotifier(TELEGRAM_TOKEN, TELEGRAM_CHAT_ID)
    contracts = ContractBook(venue)

    generator = (HttpDecisionGenerator(DECISION_URL, SYMBOLS, DECISION_API_KEY, DECISION_TIMEOUT)
                 if DECISION_URL else HoldDecisionGenerator())
    executor = OrderExecutor(venue, store, contracts, risk_config, audit=audit, notifier=notifier)
    manager = PositionManager(
        venue=venue,
        store=store,
        executor=executor,
        reconciler=PositionReconciler(venue, store, confirm_delay=RECONCILE_CONFIRM_DELAY),
        collector=MarketDataCollector(venue, SYMBOLS, CANDLE_INTERVAL, CANDLE_LIMIT),
        generator=generator,
        risk_config=risk_config,
        fixer=HistoricalPnlFixer(store, contracts.multiplier, rate=TAKER_FEE),
        audit=audit,
        notifier=notifier,
    )
    recorder = AccountRecorder(venue, store)

    strategy = risk_config.strategy
    logger.info(f'Starting Perps Lifecycle Engine — venue={venue.name} {PAPER_TRADE=}')
    logger.info(
        f'Symbols: {SYMBOLS} | Strategy: {strategy.name} '
        f'({strategy.leverage_min}-{strategy.leverage_max}x) | '
        f'Account SL ${risk_config.account_stop_loss_abs:.0f} / TP ${risk_config.account_take_profit_abs:.0f}'
    )

    stop = asyncio.Event()
    scheduler = TickScheduler(manager.run_tick, TRADING_INTERVAL_MINUTES * 60,
                              on_halt=notifier.notify_halt)
    try:
        await recorder.ensure_initial(INITIAL_BALANCE)
        await manager.recover()
        await notifier.send_startup_alert(SYMBOLS, strategy.name, venue.name)

        loop = asyncio.get_running_loop()
        loop.add_signal_handler(signal.SIGINT,  lambda: _handle_shutdown(scheduler, stop))
        loop.add_signal_handler(signal.SIGTERM, lambda: _handle_shutdown(scheduler, stop))

        await asyncio.gather(
            _run_then_stop(scheduler, stop),
            record_account(recorder, stop),
            log_status(store, scheduler, stop),
        )
    finally:
        await generator.close()
        await venue.close()
        store.close()
        logger.info('[MAIN] Shutdown complete')


async def _run_then_stop(scheduler: TickScheduler, stop: asyncio.Event):
    await scheduler.run()
    stop.set()


if __name__ == '__main__':
    asyncio.run(main())
