"""
Account Recorder — periodic AccountSnapshot rows and return statistics.

The first snapshot ever written is the initial balance; max(total_balance)
over all snapshots is the peak balance the account guard measures drawdown
against. Both definitions exclude unrealized PnL.
"""
import numpy as np
import pandas as pd
from loguru import logger

from data.models import AccountSnapshot
from execution.venue_client import VenueClient


class AccountRecorder:
    def __init__(self, venue: VenueClient, store):
        self.venue = venue
        self.store = store

    async def ensure_initial(self, initial_balance: float = 0.0) -> float:
        """Seed the history with the starting balance on a fresh ledger."""
        existing = self.store.initial_balance()
        if existing is not None:
            return existing
        if initial_balance <= 0:
            initial_balance = (await self.venue.get_account()).total_balance
        account = await self.venue.get_account()
        self.store.insert_snapshot(AccountSnapshot(
            total_balance=initial_balance,
            available_balance=account.available_balance,
            unrealized_pnl=0.0,
            realized_pnl=0.0,
            return_percent=0.0,
        ))
        logger.info(f'[RECORDER] Initial balance recorded: ${initial_balance:.2f}')
        return initial_balance

    async def record(self) -> AccountSnapshot:
        account = await self.venue.get_account()
        initial = self.store.initial_balance() or account.total_balance
        realized = account.total_balance - initial
        snap = AccountSnapshot(
            total_balance=account.total_balance,
            available_balance=account.available_balance,
            unrealized_pnl=account.unrealized_pnl,
            realized_pnl=realized,
            return_percent=realized / initial * 100 if initial > 0 else 0.0,
        )
        self.store.insert_snapshot(snap)
        logger.info(
            f'[RECORDER] Balance ${snap.total_balance:.2f} | unrealized ${snap.unrealized_pnl:+.2f} | '
            f'return {snap.return_percent:+.2f}%'
        )
        return snap


def sharpe_ratio(snapshots: list[AccountSnapshot]) -> float:
    """
    Per-interval Sharpe of equity (balance + unrealized) returns, not annualised.
    0.0 with fewer than 3 snapshots or zero variance.
    """
    if len(snapshots) < 3:
        return 0.0
    df = pd.DataFrame(
        {'equity': [s.total_balance + s.unrealized_pnl for s in snapshots]},
        index=pd.to_datetime([s.timestamp for s in snapshots], unit='s'),
    )
    returns = df['equity'].pct_change().replace([np.inf, -np.inf], np.nan).dropna()
    std = returns.std()
    if not std or np.isnan(std):
        return 0.0
    return round(float(returns.mean() / std), 4)
