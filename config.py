"""
Perps Lifecycle Engine — Central Configuration
All thresholds, constants, and env vars for the position lifecycle engine.

Core logic never reads these directly for risk decisions: main.py builds a
RiskConfig from them (RiskConfig.from_env) and passes it down.
"""
import os
from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == 'true'


# ── Venue ────────────────────────────────────────────────────────────
EXCHANGE         = os.getenv('EXCHANGE', 'gate')          # gate | paper
GATE_API_KEY     = os.getenv('GATE_API_KEY', '')
GATE_API_SECRET  = os.getenv('GATE_API_SECRET', '')
USE_TESTNET      = _flag('USE_TESTNET', 'false')
GATE_BASE_URL    = 'https://fx-api-testnet.gateio.ws/api/v4' if USE_TESTNET \
                   else 'https://api.gateio.ws/api/v4'
SETTLE           = 'usdt'

# ── Assets ──────────────────────────────────────────────────────────
SYMBOLS          = [s.strip() for s in os.getenv('SYMBOLS', 'BTC,ETH,SOL,BNB,XRP,DOGE').split(',') if s.strip()]
CANDLE_INTERVAL  = os.getenv('CANDLE_INTERVAL', '5m')
CANDLE_LIMIT     = int(os.getenv('CANDLE_LIMIT', '100'))

# ── Strategy & Leverage ──────────────────────────────────────────────
TRADING_STRATEGY      = os.getenv('TRADING_STRATEGY', 'balanced')   # conservative | balanced | aggressive
MAX_LEVERAGE          = int(os.getenv('MAX_LEVERAGE', '10'))
MAX_POSITIONS         = int(os.getenv('MAX_POSITIONS', '5'))
MAX_ADDS_PER_SYMBOL   = int(os.getenv('MAX_ADDS_PER_SYMBOL', '2'))
MAX_ADD_FRACTION      = float(os.getenv('MAX_ADD_FRACTION', '0.5'))  # add ≤ 50% of existing notional
MAX_EXPOSURE_MULTIPLE = float(os.getenv('MAX_EXPOSURE_MULTIPLE', str(MAX_LEVERAGE)))

# ── Position Lifecycle ───────────────────────────────────────────────
MAX_HOLDING_HOURS     = float(os.getenv('MAX_HOLDING_HOURS', '36'))

# ── Account Guard ────────────────────────────────────────────────────
ACCOUNT_STOP_LOSS_USDT   = float(os.getenv('ACCOUNT_STOP_LOSS_USDT', '50'))
ACCOUNT_TAKE_PROFIT_USDT = float(os.getenv('ACCOUNT_TAKE_PROFIT_USDT', '10000'))
DRAWDOWN_WARNING_PCT     = float(os.getenv('ACCOUNT_DRAWDOWN_WARNING_PERCENT', '10'))
DRAWDOWN_NO_NEW_PCT      = float(os.getenv('ACCOUNT_DRAWDOWN_NO_NEW_POSITION_PERCENT', '15'))
DRAWDOWN_FORCE_CLOSE_PCT = float(os.getenv('ACCOUNT_DRAWDOWN_FORCE_CLOSE_PERCENT', '20'))
SYNC_CONFIG_ON_STARTUP   = _flag('SYNC_CONFIG_ON_STARTUP', 'false')

# ── Execution ────────────────────────────────────────────────────────
TAKER_FEE                = float(os.getenv('TAKER_FEE', '0.0005'))    # 0.05%
OPEN_SLIPPAGE_TOLERANCE  = float(os.getenv('OPEN_SLIPPAGE_TOLERANCE', '0.02'))
CLOSE_SLIPPAGE_TOLERANCE = float(os.getenv('CLOSE_SLIPPAGE_TOLERANCE', '0.03'))
ORDER_SETTLE_DELAY       = float(os.getenv('ORDER_SETTLE_DELAY', '2.0'))   # seconds before first poll
ORDER_POLL_ATTEMPTS      = int(os.getenv('ORDER_POLL_ATTEMPTS', '3'))
ORDER_POLL_DELAY         = float(os.getenv('ORDER_POLL_DELAY', '0.3'))
LIQ_PRICE_ATTEMPTS       = int(os.getenv('LIQ_PRICE_ATTEMPTS', '5'))
RECONCILE_CONFIRM_DELAY  = float(os.getenv('RECONCILE_CONFIRM_DELAY', '1.0'))

# ── Scheduler ────────────────────────────────────────────────────────
TRADING_INTERVAL_MINUTES        = float(os.getenv('TRADING_INTERVAL_MINUTES', '5'))
ACCOUNT_RECORD_INTERVAL_MINUTES = float(os.getenv('ACCOUNT_RECORD_INTERVAL_MINUTES', '10'))

# ── Persistence ──────────────────────────────────────────────────────
DATABASE_PATH    = os.getenv('DATABASE_PATH', 'data/trading.db')
TRADE_AUDIT_PATH = os.getenv('TRADE_AUDIT_PATH', 'data/trade_audit.jsonl')
INITIAL_BALANCE  = float(os.getenv('INITIAL_BALANCE') or '0')   # 0 = use live balance on first run

# ── Decision Generator ───────────────────────────────────────────────
DECISION_URL     = os.getenv('DECISION_URL', '')     # empty = hold every tick
DECISION_API_KEY = os.getenv('DECISION_API_KEY', '')
DECISION_TIMEOUT = float(os.getenv('DECISION_TIMEOUT', '120'))

# ── System ──────────────────────────────────────────────────────────
PAPER_TRADE     = _flag('PAPER_TRADE', 'true')
PAPER_BALANCE   = float(os.getenv('PAPER_BALANCE', '1000'))
LOG_LEVEL       = os.getenv('LOG_LEVEL', 'INFO')

# ── Telegram ─────────────────────────────────────────────────────────
TELEGRAM_TOKEN   = os.getenv('TELEGRAM_TOKEN', '')
TELEGRAM_CHAT_ID = os.getenv('TELEGRAM_CHAT_ID', '')
