import numpy as np
import pytest

from wealthsim.params import (
    CapitalPreservation, FixedPayout, LumpSum, Parameters, PercentOfWealthPayout,
)
from wealthsim.simulation import (
    History, Phase, SimulationOptions, analyze_history, get_stress_return, simulate,
)
from wealthsim.tax import LotSelectionMethod
from wealthsim.utils import to_monthly_rate

RATE = 0.26375


def _quiet_params(**overrides):
    """Short plan without interest or growth so balances can be checked by hand."""
    values = dict(
        start_cash=1000.0, start_equity=0.0, monthly_cash=100.0, monthly_equity=100.0,
        cash_target=2000.0, cash_rate_pa=0.0, equity_rate_pa=0.0,
        accumulation_years=2, withdrawal_years=0,
    )
    values.update(overrides)
    return Parameters(**values)


def test_default_plan_end_to_end():
    params = Parameters()
    history = simulate(params)

    assert len(history) == 792
    assert history[431].phase == Phase.ACCUMULATION
    assert history[432].phase == Phase.WITHDRAWAL
    assert history[432].month == 433
    assert all(r.shortfall == 0 for r in history)
    assert all(r.tax_shortfall == 0 for r in history)
    assert history[431].total == pytest.approx(history[431].cash + history[431].equity)
    assert history.last.total > 0

    summary = analyze_history(history, params)
    assert not summary.has_shortfall
    assert summary.shortfall_months == 0


def test_deterministic_run_is_reproducible():
    params = Parameters(accumulation_years=5, withdrawal_years=5)
    assert simulate(params) == simulate(params)


def test_seeded_runs_are_reproducible():
    params = Parameters(accumulation_years=5, withdrawal_years=5)
    a = simulate(params, 15.0, rng=np.random.default_rng(42))
    b = simulate(params, 15.0, rng=np.random.default_rng(42))
    c = simulate(params, 15.0, rng=np.random.default_rng(43))
    assert a == b
    assert a != c


def test_seed_option_matches_generator():
    params = Parameters(accumulation_years=3, withdrawal_years=3)
    a = simulate(params, 15.0, SimulationOptions(seed=7))
    b = simulate(params, 15.0, rng=np.random.default_rng(7))
    assert a == b


@pytest.mark.parametrize("annual", [0.0, 3.0, 6.0, -20.0, 12.0])
def test_monthly_rate_compounds_to_annual(annual):
    monthly = to_monthly_rate(annual)
    assert (1 + monthly) ** 12 == pytest.approx(1 + annual / 100)


def test_contributions_are_conserved():
    params = _quiet_params()
    history = simulate(params)
    assert history.last.total == pytest.approx(1000 + 24 * 200)
    assert history.last.cash + history.last.equity == pytest.approx(history.last.total)


def test_cash_overflow_goes_to_equity():
    params = _quiet_params()
    history = simulate(params)
    assert all(r.cash <= params.cash_target + 1e-9 for r in history)
    # 1000 + 10 * 100 reaches the target after 10 months
    assert history[9].cash == pytest.approx(2000)
    # month 11 pushes the first 100 over the target into equity
    assert history[10].cash_contrib == pytest.approx(100)
    assert history[10].equity_contrib == pytest.approx(200)
    assert history[11].cash_contrib == 0
    assert history[11].equity_contrib == pytest.approx(200)


def test_equity_grows_at_configured_rate():
    params = _quiet_params(start_equity=1000.0, monthly_cash=0.0, monthly_equity=0.0,
                           start_cash=0.0, cash_target=0.0, equity_rate_pa=6.0,
                           accumulation_years=1, tax_cash_interest=False)
    history = simulate(params)
    assert history.last.equity == pytest.approx(1060)


def test_allowance_resets_each_year():
    params = Parameters(accumulation_years=3, withdrawal_years=0, base_rate_pa=0.0, start_year=2030)
    history = simulate(params)
    # Interest tax at year end uses part of the allowance
    assert history[11].allowance_used > 0
    assert history[12].allowance_used == 0
    for prev, cur in zip(history, history[1:]):
        if prev.year == cur.year:
            assert cur.allowance_used >= prev.allowance_used
        assert cur.allowance_used <= params.annual_allowance


def test_unfunded_withdrawals_are_shortfalls():
    params = Parameters(start_cash=0.0, start_equity=0.0, monthly_cash=0.0, monthly_equity=0.0,
                        cash_target=0.0, accumulation_years=0, withdrawal_years=1,
                        payout=FixedPayout(1000.0))
    history = simulate(params)
    assert len(history) == 12
    assert all(r.shortfall == pytest.approx(1000) for r in history)
    assert all(r.withdrawal == 0 for r in history)
    assert history.retirement_total == 0
    assert history.retirement_record is None


def test_percent_payout_fixed_at_retirement():
    params = _quiet_params(start_equity=120000.0, start_cash=0.0, monthly_cash=0.0,
                           monthly_equity=0.0, cash_target=0.0, accumulation_years=1,
                           withdrawal_years=1, payout=PercentOfWealthPayout(4.0),
                           inflation_adjust_withdrawal=False)
    history = simulate(params)
    payouts = [r.monthly_payout for r in history if r.phase == Phase.WITHDRAWAL]
    assert payouts[0] == pytest.approx(120000 * 0.04 / 12)
    assert payouts == pytest.approx([payouts[0]] * 12)


def test_gross_payout_nets_less_than_gross():
    params = Parameters(accumulation_years=10, withdrawal_years=5, payout_is_gross=True,
                        annual_allowance=0.0)
    history = simulate(params)
    withdrawal_rows = [r for r in history if r.phase == Phase.WITHDRAWAL]
    assert all(r.withdrawal_net <= r.withdrawal + 1e-9 for r in withdrawal_rows)
    assert any(r.withdrawal_net < r.withdrawal for r in withdrawal_rows)


def test_stress_scenario_overrides_returns():
    params = Parameters(accumulation_years=1, withdrawal_years=2)
    history = simulate(params, 15.0, SimulationOptions(stress_scenario='early_crash', seed=1))
    first_withdrawal = history[12]
    assert first_withdrawal.equity_return == pytest.approx(0.7 ** (1 / 12))
    assert history[24].equity_return == pytest.approx(0.9 ** (1 / 12))


def test_stress_return_outside_window_is_none():
    assert get_stress_return('none', 20, 12) is None
    assert get_stress_return('early_crash', 12, 12) is None
    assert get_stress_return('early_crash', 13, 12) == pytest.approx(0.7 ** (1 / 12))
    assert get_stress_return('early_crash', 12 + 121, 12) is None


def test_capital_preservation_reduces_payout():
    params = Parameters(start_cash=0.0, start_equity=12000.0, monthly_cash=0.0, monthly_equity=0.0,
                        cash_target=0.0, accumulation_years=0, withdrawal_years=2,
                        equity_rate_pa=0.0, payout=FixedPayout(1000.0),
                        inflation_adjust_withdrawal=False,
                        capital_preservation=CapitalPreservation(
                            enabled=True, threshold=80.0, reduction=50.0, recovery=10.0))
    history = simulate(params)
    assert history.capital_preservation_months > 0
    active = [r for r in history if r.capital_preservation_active]
    assert active[0].monthly_payout == pytest.approx(500, abs=1)


def test_to_frame_has_one_row_per_month():
    params = Parameters(accumulation_years=1, withdrawal_years=1)
    frame = simulate(params).to_frame()
    assert len(frame) == 24
    assert frame.index.name == 'month'
    assert set(frame['phase']) == {'accumulation', 'withdrawal'}


def test_analyze_history():
    params = _quiet_params()
    history = simulate(params)
    summary = analyze_history(history, params)
    assert summary.total_invested >= 1000 + 24 * 200
    assert summary.total_return == pytest.approx(0)
    assert summary.end_total == pytest.approx(history.last.total)
    assert not summary.has_shortfall
    assert analyze_history(History([], 0, 0.0), params) is None


def test_lump_sum_sells_lots_then_draws_cash():
    # Cash starts at target, so every contribution goes to equity
    params = _quiet_params(start_cash=2000.0, accumulation_lump_sum=LumpSum(
        amount=5000.0, interval_years=1, inflation_adjust=False))
    history = simulate(params)

    month_12 = history[11]
    # 2400 from lots, 2000 from cash, 600 unmet
    assert month_12.withdrawal_requested == pytest.approx(5000)
    assert month_12.withdrawal == pytest.approx(4400)
    assert month_12.shortfall == pytest.approx(600)
    assert month_12.cash == pytest.approx(0)
    assert month_12.equity == pytest.approx(0)

    # Drawdown below target: contributions go back to cash
    assert history[12].cash_contrib == pytest.approx(100)
    assert history[12].equity_contrib == pytest.approx(100)


def test_lump_sum_covered_without_shortfall():
    params = _quiet_params(start_cash=2000.0, accumulation_lump_sum=LumpSum(
        amount=3000.0, interval_years=1, inflation_adjust=False))
    history = simulate(params)
    assert history[11].withdrawal == pytest.approx(3000)
    assert history[11].shortfall == 0
    assert history[11].cash == pytest.approx(1400)
    assert history[12].cash_contrib == pytest.approx(100)


def test_payout_uses_cash_above_target_first():
    params = _quiet_params(start_cash=3000.0, cash_target=1000.0, start_equity=10000.0,
                           monthly_cash=0.0, monthly_equity=0.0,
                           accumulation_years=0, withdrawal_years=1,
                           payout=FixedPayout(500.0), inflation_adjust_withdrawal=False)
    history = simulate(params)
    for month in range(4):
        assert history[month].equity == pytest.approx(10000)
    assert history[3].cash == pytest.approx(1000)
    # Cash is back at target; the fifth payout comes from lots
    assert history[4].cash == pytest.approx(1000)
    assert history[4].equity == pytest.approx(9500)
    assert all(r.shortfall == 0 for r in history)


@pytest.mark.parametrize("method", list(LotSelectionMethod))
def test_equity_matches_ledger_every_month(method):
    params = Parameters(accumulation_years=5, withdrawal_years=5, lot_selection=method)
    history = simulate(params, 20.0, rng=np.random.default_rng(3))
    for r in history:
        assert r.equity == pytest.approx(r.equity_shares * r.equity_price)
        assert r.total == pytest.approx(r.cash + r.equity)


def test_degenerate_tax_rate_becomes_shortfall(monkeypatch):
    monkeypatch.setattr(Parameters, 'tax_rate', property(lambda self: 5.0))
    params = _quiet_params(start_cash=0.0, cash_target=0.0, start_equity=10000.0,
                           start_equity_cost_basis=5000.0, monthly_cash=0.0, monthly_equity=0.0,
                           accumulation_years=0, withdrawal_years=1, annual_allowance=0.0,
                           payout=FixedPayout(500.0), inflation_adjust_withdrawal=False,
                           base_rate_pa=0.0, start_year=2030)
    history = simulate(params)
    # 50 gain per share x 0.7 x 5.0 exceeds the price of 100: no lot can be sold
    assert all(r.shortfall == pytest.approx(500) for r in history)
    assert history.last.equity == pytest.approx(10000)


def _advance_params(**overrides):
    values = dict(start_cash=0.0, start_equity=100000.0, monthly_cash=0.0, monthly_equity=0.0,
                  cash_target=0.0, cash_rate_pa=0.0, equity_rate_pa=6.0,
                  accumulation_years=2, withdrawal_years=0, tax_cash_interest=False,
                  start_year=2030)
    values.update(overrides)
    return Parameters(**values)


@pytest.mark.parametrize("allowance, expected_tax", [
    # 1000 shares x 100 x 2.53% x 0.7 = 1771, taxable 1771 x 0.7 = 1239.70
    (0.0, 1239.7 * RATE),
    (1000.0, 239.7 * RATE),
])
def test_advance_tax_due_in_january(allowance, expected_tax):
    history = simulate(_advance_params(annual_allowance=allowance))
    assert all(r.advance_tax == 0 for r in history[:12])
    assert history[12].advance_tax == pytest.approx(expected_tax, rel=1e-6)
    assert history[12].allowance_used >= min(allowance, 1239.7) - 1e-9
    assert history[12].tax_shortfall == 0


def test_advance_tax_uses_published_base_rate():
    history = simulate(_advance_params(annual_allowance=0.0, start_year=2022))
    # 2022 had a negative base rate
    assert history[12].advance_tax == 0
    # 2023: 1000 x 106 x 2.55% x 0.7 = 1892.10, settled after the last month
    assert history.last.advance_tax == pytest.approx(1892.1 * 0.7 * RATE, rel=1e-6)
    assert history.last.total == pytest.approx(history.last.cash + history.last.equity)
    assert history.last.equity == pytest.approx(history.last.equity_shares * history.last.equity_price)


def test_advance_tax_disabled_without_base_rate():
    history = simulate(_advance_params(base_rate_pa=0.0))
    assert all(r.advance_tax == 0 for r in history)
    assert analyze_history(history, _advance_params(base_rate_pa=0.0)).total_advance_tax == 0
