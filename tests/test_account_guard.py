import pytest

from execution.risk import AccountGuard, GuardAction


@pytest.fixture
def guard(risk_config):
    return AccountGuard(risk_config)


@pytest.mark.parametrize('balance, action', [
    (800, GuardAction.FORCE_CLOSE_ALL),    # exactly 20%
    (799, GuardAction.FORCE_CLOSE_ALL),
    (850, GuardAction.BLOCK_NEW),          # exactly 15%
    (900, GuardAction.WARN),               # exactly 10%
    (901, GuardAction.NORMAL),
    (1000, GuardAction.NORMAL),
])
def test_drawdown_levels_from_peak(guard, balance, action):
    assert guard.evaluate(balance, initial_balance=1000, peak_balance=1000).action == action


def test_peak_not_initial_is_the_reference(guard):
    d = guard.evaluate(1000, initial_balance=800, peak_balance=1250)
    assert d.drawdown_pct == pytest.approx(20.0)
    assert d.action == GuardAction.FORCE_CLOSE_ALL


def test_absolute_stop_loss_checked_first(guard):
    d = guard.evaluate(50, initial_balance=None, peak_balance=None)
    assert d.action == GuardAction.FORCE_CLOSE_ALL
    assert 'stop-loss' in d.reason


def test_absolute_take_profit(guard):
    d = guard.evaluate(10_000, initial_balance=1000, peak_balance=9000)
    assert d.action == GuardAction.FORCE_CLOSE_ALL
    assert 'take-profit' in d.reason


def test_allows_new_only_when_normal_or_warn(guard):
    assert guard.evaluate(950, 1000, 1000).allows_new
    assert guard.evaluate(900, 1000, 1000).allows_new
    assert not guard.evaluate(850, 1000, 1000).allows_new


def test_empty_history_means_no_drawdown(guard):
    d = guard.evaluate(700, initial_balance=None, peak_balance=None)
    assert d.drawdown_pct == 0.0
    assert d.action == GuardAction.NORMAL
