"""
Input validation.

Every check runs before a simulation starts; a bad value raises
ParameterError (a ValueError) naming the offending field.
"""

import math
import numbers

from wealthsim import config as cfg


class ParameterError(ValueError):
    """Raised for non-numeric or out-of-range inputs."""


def _check_number(name, value, minimum=None, maximum=None, min_inclusive=True):
    if isinstance(value, bool) or not isinstance(value, numbers.Real):
        raise ParameterError(f"{name} must be a number, got {value!r}")
    if not math.isfinite(value):
        raise ParameterError(f"{name} must be finite, got {value!r}")
    if minimum is not None:
        if min_inclusive and value < minimum:
            raise ParameterError(f"{name} must be >= {minimum}, got {value}")
        if not min_inclusive and value <= minimum:
            raise ParameterError(f"{name} must be > {minimum}, got {value}")
    if maximum is not None and value > maximum:
        raise ParameterError(f"{name} must be <= {maximum}, got {value}")


def _check_int(name, value, minimum=None, maximum=None):
    if isinstance(value, bool) or not isinstance(value, numbers.Integral):
        raise ParameterError(f"{name} must be an integer, got {value!r}")
    _check_number(name, value, minimum, maximum)


def validate_parameters(params):
    """Validate a Parameters value; raises ParameterError on the first bad field."""
    # Imported here: params imports this module
    from wealthsim.params import FixedPayout, PercentOfWealthPayout
    from wealthsim.tax.lot_selection import LotSelectionMethod

    for name in ('start_cash', 'start_equity', 'start_equity_cost_basis',
                 'monthly_cash', 'monthly_equity', 'cash_target',
                 'withdrawal_min', 'withdrawal_max', 'annual_allowance',
                 'initial_loss_pot'):
        _check_number(name, getattr(params, name), minimum=0)

    for name in ('cash_rate_pa', 'equity_rate_pa', 'inflation_rate_pa'):
        _check_number(name, getattr(params, name), minimum=-100, maximum=100, min_inclusive=False)
    _check_number('equity_ter_pa', params.equity_ter_pa, minimum=0, maximum=10)
    _check_number('annual_raise_percent', params.annual_raise_percent, minimum=-100, maximum=100)
    if params.equity_rate_pa - params.equity_ter_pa <= -100:
        raise ParameterError("equity_rate_pa - equity_ter_pa must be > -100")

    _check_int('accumulation_years', params.accumulation_years, minimum=0, maximum=100)
    _check_int('withdrawal_years', params.withdrawal_years, minimum=0, maximum=100)
    if params.accumulation_years + params.withdrawal_years <= 0:
        raise ParameterError("accumulation_years + withdrawal_years must be > 0")

    payout = params.payout
    if isinstance(payout, FixedPayout):
        _check_number('payout.amount', payout.amount, minimum=0)
    elif isinstance(payout, PercentOfWealthPayout):
        _check_number('payout.percent', payout.percent, minimum=0, maximum=100, min_inclusive=False)
    else:
        raise ParameterError(f"payout must be FixedPayout or PercentOfWealthPayout, got {payout!r}")

    if 0 < params.withdrawal_max < params.withdrawal_min:
        raise ParameterError(
            f"withdrawal_max ({params.withdrawal_max}) must be >= withdrawal_min ({params.withdrawal_min})"
        )

    for name in ('accumulation_lump_sum', 'withdrawal_lump_sum'):
        lump_sum = getattr(params, name)
        _check_number(f'{name}.amount', lump_sum.amount, minimum=0)
        _check_int(f'{name}.interval_years', lump_sum.interval_years, minimum=0)

    preservation = params.capital_preservation
    _check_number('capital_preservation.threshold', preservation.threshold,
                  minimum=0, maximum=100, min_inclusive=False)
    _check_number('capital_preservation.reduction', preservation.reduction, minimum=0, maximum=100)
    _check_number('capital_preservation.recovery', preservation.recovery, minimum=0)

    _check_number('base_rate_pa', params.base_rate_pa, minimum=-10, maximum=20)
    if params.start_year is not None:
        _check_int('start_year', params.start_year, minimum=1900, maximum=2200)

    if params.church_tax not in cfg.CHURCH_TAX_RATES:
        raise ParameterError(
            f"church_tax must be one of {sorted(cfg.CHURCH_TAX_RATES)}, got {params.church_tax!r}"
        )
    if params.fund_type not in cfg.EXEMPTION_FACTORS:
        raise ParameterError(
            f"fund_type must be one of {sorted(cfg.EXEMPTION_FACTORS)}, got {params.fund_type!r}"
        )
    if not isinstance(params.lot_selection, LotSelectionMethod):
        raise ParameterError(f"lot_selection must be a LotSelectionMethod, got {params.lot_selection!r}")


def validate_monte_carlo_options(options):
    """Validate MonteCarloOptions; raises ParameterError on the first bad field."""
    _check_int('iterations', options.iterations, minimum=1, maximum=cfg.MC_MAX_ITERATIONS)
    _check_number('volatility', options.volatility, minimum=0, maximum=100)
    if options.seed is not None:
        _check_int('seed', options.seed, minimum=0)
    if options.success_threshold is not None:
        _check_number('success_threshold', options.success_threshold, minimum=0)
    _check_number('ruin_threshold_percent', options.ruin_threshold_percent, minimum=0, maximum=100)
    if options.stress_scenario not in cfg.STRESS_SCENARIOS:
        raise ParameterError(
            f"stress_scenario must be one of {sorted(cfg.STRESS_SCENARIOS)}, got {options.stress_scenario!r}"
        )
    _check_int('chunk_size', options.chunk_size, minimum=1)
    _check_int('max_sample_paths', options.max_sample_paths, minimum=0)
