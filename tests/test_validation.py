import pytest

from wealthsim.params import (
    FixedPayout, LumpSum, MonteCarloOptions, Parameters, PercentOfWealthPayout,
    parameters_from_dict,
)
from wealthsim.tax import LotSelectionMethod
from wealthsim.validation import ParameterError


@pytest.mark.parametrize("overrides", [
    {'start_cash': -1.0},
    {'monthly_equity': float('nan')},
    {'cash_target': 'lots'},
    {'accumulation_years': 2.5},
    {'accumulation_years': 0, 'withdrawal_years': 0},
    {'payout': PercentOfWealthPayout(0.0)},
    {'payout': FixedPayout(-10.0)},
    {'withdrawal_min': 500.0, 'withdrawal_max': 100.0},
    {'church_tax': '7'},
    {'fund_type': 'crypto'},
    {'lot_selection': 'fifo'},
    {'equity_ter_pa': 20.0},
    {'accumulation_lump_sum': LumpSum(amount=-1.0, interval_years=5)},
    {'base_rate_pa': 50.0},
    {'start_year': 1500},
    {'start_year': 2025.5},
])
def test_invalid_parameters_raise(overrides):
    with pytest.raises(ParameterError):
        Parameters(**overrides)


def test_parameter_error_is_value_error():
    with pytest.raises(ValueError):
        Parameters(start_cash=-1.0)


def test_with_overrides_revalidates():
    params = Parameters()
    assert params.with_overrides(monthly_cash=10.0).monthly_cash == 10.0
    assert params.monthly_cash == 100.0
    with pytest.raises(ParameterError):
        params.with_overrides(monthly_cash=-10.0)


@pytest.mark.parametrize("overrides", [
    {'iterations': 0},
    {'iterations': 10 ** 6},
    {'volatility': -1.0},
    {'stress_scenario': 'apocalypse'},
    {'seed': -3},
    {'chunk_size': 0},
    {'max_sample_paths': -1},
])
def test_invalid_monte_carlo_options_raise(overrides):
    with pytest.raises(ParameterError):
        MonteCarloOptions(**overrides)


def test_derived_values():
    params = Parameters(church_tax='9', fund_type='mixed')
    assert params.accumulation_months == 432
    assert params.total_months == 792
    assert params.monthly_budget == 250
    assert params.exemption_factor == 0.85
    assert params.tax_rate == pytest.approx(0.25 / 1.0225 * 1.145)


def test_parameters_from_dict():
    params = parameters_from_dict({
        'payout_percent': 3.5,
        'lot_selection': 'LIFO',
        'withdrawal_lump_sum': {'amount': 5000.0, 'interval_years': 5},
    })
    assert params.payout == PercentOfWealthPayout(3.5)
    assert params.lot_selection == LotSelectionMethod.LIFO
    assert params.withdrawal_lump_sum.enabled
    assert parameters_from_dict({'payout_amount': 800}).payout == FixedPayout(800.0)


def test_lump_sum_schedule():
    lump = LumpSum(amount=1000.0, interval_years=2)
    assert lump.is_due(24)
    assert not lump.is_due(12)
    assert lump.amount_at(24, 2.0) == pytest.approx(1000 * 1.02 ** 2)
    assert LumpSum(amount=1000.0, interval_years=2, inflation_adjust=False).amount_at(24, 2.0) == 1000
    assert not LumpSum().enabled
