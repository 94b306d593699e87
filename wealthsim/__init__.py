"""
wealthsim - savings and withdrawal plan simulator with German capital gains tax

Entry point: wealthsim.run()
"""

import time
from wealthsim import config as cfg
from wealthsim.utils import fmt_elapsed


def run(params=None, mc_options=None, optimize_objective=None):
    """Main execution - deterministic run, Monte Carlo, optional grid optimizer."""

    run_start = time.time()
    step_times = []

    def _step(label):
        """Print step timing and record it."""
        now = time.time()
        if step_times:
            prev_label, prev_start = step_times[-1]
            elapsed = now - prev_start
            print(f"  [{fmt_elapsed(elapsed)}] {prev_label}")
        step_times.append((label, now))

    cfg.print_banner()

    # Lazy imports keep `import wealthsim` cheap
    from wealthsim.tax.engine import run_golden_tests
    from wealthsim.params import MonteCarloOptions, Parameters
    from wealthsim.simulation.engine import analyze_history, simulate
    from wealthsim.mc_runner import run_monte_carlo
    from wealthsim.optimizer import OptimizationObjective, run_optimization
    from wealthsim.reporting import (
        print_history_summary, print_monte_carlo_summary, print_optimization_result,
    )

    params = params or Parameters()
    mc_options = mc_options or MonteCarloOptions()

    # ========================================================================
    # STEP 0: Validate Tax Ledger (mandatory)
    # ========================================================================
    _step("Tax ledger validation")
    print("\n### VALIDATING TAX LEDGER ###\n")
    golden = run_golden_tests(trace_failures=True)
    if golden['failed'] > 0:
        print(f"\nGOLDEN TESTS FAILED: {golden['failed']}/{golden['total']}")
        print("STOPPING - System is broken")
        return None
    print("\nTax ledger validated - proceeding with simulation\n")

    # ========================================================================
    # STEP 1: Deterministic run
    # ========================================================================
    _step("Deterministic simulation")
    history = simulate(params)
    print_history_summary(analyze_history(history, params), params)

    # ========================================================================
    # STEP 2: Monte Carlo
    # ========================================================================
    _step("Monte Carlo simulation")
    mc_result = run_monte_carlo(params, mc_options)
    print_monte_carlo_summary(mc_result, params)

    # ========================================================================
    # STEP 3: Optimizer (optional)
    # ========================================================================
    opt_result = None
    if optimize_objective is not None:
        _step("Optimizer")
        opt_result = run_optimization(params, OptimizationObjective(optimize_objective),
                                      mc_options)
        print_optimization_result(opt_result)

    _step("done")

    # ========================================================================
    # Timing Summary
    # ========================================================================
    total_elapsed = time.time() - run_start
    print("\n" + "=" * 80)
    print("TIMING SUMMARY")
    print("=" * 80)
    for i in range(len(step_times) - 1):
        label, start = step_times[i]
        _, end = step_times[i + 1]
        elapsed = end - start
        pct = (elapsed / total_elapsed) * 100 if total_elapsed > 0 else 0
        print(f"  {label:<40s} {fmt_elapsed(elapsed):>8s}  ({pct:5.1f}%)")
    print(f"  {'':->56s}")
    print(f"  {'TOTAL':<40s} {fmt_elapsed(total_elapsed):>8s}")
    print("=" * 80)

    return {
        'history': history,
        'monte_carlo': mc_result,
        'optimization': opt_result,
    }
