from wealthsim.tax.lot_selection import (
    LotSelectionMethod, select_lot_fifo, select_lot_lifo, select_lot_index
)
from wealthsim.tax.ledger import TaxLot, AllowanceState, SaleResult, TaxLedger
from wealthsim.tax.engine import (
    calculate_tax_rate, tax_on_income, get_base_rate, advance_lump_sum,
    TaxCoverResult, cover_tax, GoldenSaleCase, GoldenAdvanceCase, GOLDEN_TESTS,
    run_golden_tests
)
