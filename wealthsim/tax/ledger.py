"""
Per-run tax-lot ledger for the equity bucket.

Each purchase becomes a TaxLot. Sales consume lots FIFO or LIFO and are taxed
at a flat rate after the partial exemption, the loss pot and the annual
allowance have been applied (in that order). A ledger belongs to exactly one
simulation run and is never shared.
"""

from dataclasses import dataclass
from typing import List, Optional

from wealthsim import config as cfg
from wealthsim.tax.lot_selection import LotSelectionMethod, select_lot_index


@dataclass
class TaxLot:
    shares: float
    price: float      # acquisition price per share (cost basis)
    month: int        # acquisition month, 0 = held at simulation start


@dataclass
class AllowanceState:
    """Allowance consumed in the current tax year. Never negative, never shrinks mid-year."""
    year_index: int = 0
    used_amount: float = 0.0

    def reset(self, year_index: int):
        self.year_index = year_index
        self.used_amount = 0.0

    def remaining(self, annual_allowance: float) -> float:
        return max(0.0, annual_allowance - self.used_amount)

    def consume(self, amount: float, annual_allowance: float) -> float:
        """Use up to `amount` of the remaining allowance; returns the amount used."""
        used = min(max(0.0, amount), self.remaining(annual_allowance))
        self.used_amount += used
        return used


@dataclass
class SaleResult:
    remaining: float          # net amount still owed (negative = overshoot)
    shortfall: float          # unmet part of the target, 0 when covered
    tax_paid: float
    gross_proceeds: float
    net_proceeds: float
    taxable_gain: float       # after exemption, losses negative
    shares_sold: float


class TaxLedger:
    """Ordered list of open lots plus the carried-forward loss pot."""

    def __init__(self, loss_pot: float = 0.0):
        self.lots: List[TaxLot] = []
        self.loss_pot = loss_pot

    def __len__(self):
        return len(self.lots)

    @property
    def total_shares(self) -> float:
        return sum(lot.shares for lot in self.lots)

    def value(self, price: float) -> float:
        return self.total_shares * price

    def buy(self, amount: float, price: float, month: int) -> Optional[TaxLot]:
        """Append a lot worth `amount` at `price`. Non-positive amounts are ignored."""
        if amount <= 0:
            return None
        lot = TaxLot(shares=amount / price, price=price, month=month)
        self.lots.append(lot)
        return lot

    def add_lot(self, shares: float, price: float, month: int) -> TaxLot:
        lot = TaxLot(shares=shares, price=price, month=month)
        self.lots.append(lot)
        return lot

    def tax_on_gain(self, taxable_gain: float, allowance: AllowanceState,
                    annual_allowance: float, tax_rate: float) -> float:
        """
        Tax due on one realized, already exempted gain.

        Gains use up the loss pot, then the allowance; the rest is taxed at
        `tax_rate`. Losses go into the loss pot and never produce negative tax.
        """
        if taxable_gain < 0:
            self.loss_pot += -taxable_gain
            return 0.0
        used_loss_pot = min(taxable_gain, self.loss_pot)
        self.loss_pot -= used_loss_pot
        after_loss_pot = taxable_gain - used_loss_pot
        used_allowance = allowance.consume(after_loss_pot, annual_allowance)
        return (after_loss_pot - used_allowance) * tax_rate

    def _remove_or_reduce(self, index: int, shares_needed: float, shares_sold: float):
        lot = self.lots[index]
        if shares_needed >= lot.shares:
            del self.lots[index]
        else:
            lot.shares -= shares_sold

    def sell(self, target_net: float, price: float, allowance: AllowanceState,
             annual_allowance: float, exemption_factor: float, tax_rate: float,
             method: LotSelectionMethod = LotSelectionMethod.FIFO) -> SaleResult:
        """
        Sell lots until `target_net` has been raised after tax.

        Per lot the share count is solved so the net amount is hit exactly:
        shares covered by the loss pot or the allowance come tax-free, the rest
        yield `price - taxable_gain_per_share * tax_rate` each. A lot whose
        post-tax price per share is not positive stops the sale; whatever is
        still owed is reported as shortfall.
        """
        remaining = target_net
        tax_paid = 0.0
        gross_proceeds = 0.0
        taxable_total = 0.0
        shares_total = 0.0

        while remaining > cfg.SALE_TOLERANCE and self.lots:
            index = select_lot_index(self.lots, method)
            lot = self.lots[index]
            gain_per_share = price - lot.price

            if gain_per_share > 0:
                taxable_per_share = gain_per_share * exemption_factor
                loss_pot_shares = min(self.loss_pot / taxable_per_share, lot.shares)
                allowance_shares = min(allowance.remaining(annual_allowance) / taxable_per_share,
                                       lot.shares - loss_pot_shares)
                tax_free_shares = loss_pot_shares + allowance_shares
                shares_if_tax_free = remaining / price

                if shares_if_tax_free <= tax_free_shares:
                    shares_needed = shares_if_tax_free
                else:
                    net_per_taxed_share = price - taxable_per_share * tax_rate
                    if net_per_taxed_share <= 0:
                        break
                    still_needed = remaining - tax_free_shares * price
                    shares_needed = tax_free_shares + still_needed / net_per_taxed_share
            else:
                shares_needed = remaining / price

            shares_sold = min(shares_needed, lot.shares)
            taxable_gain = shares_sold * gain_per_share * exemption_factor
            part_tax = self.tax_on_gain(taxable_gain, allowance, annual_allowance, tax_rate)

            gross_proceeds += shares_sold * price
            taxable_total += taxable_gain
            shares_total += shares_sold
            tax_paid += part_tax
            remaining -= shares_sold * price - part_tax

            self._remove_or_reduce(index, shares_needed, shares_sold)

        return SaleResult(
            remaining=remaining,
            shortfall=remaining if remaining > cfg.SALE_TOLERANCE else 0.0,
            tax_paid=tax_paid,
            gross_proceeds=gross_proceeds,
            net_proceeds=gross_proceeds - tax_paid,
            taxable_gain=taxable_total,
            shares_sold=shares_total,
        )

    def sell_gross(self, gross_amount: float, price: float, allowance: AllowanceState,
                   annual_allowance: float, exemption_factor: float, tax_rate: float,
                   method: LotSelectionMethod = LotSelectionMethod.FIFO) -> SaleResult:
        """Sell shares worth `gross_amount` before tax; the payee receives the net."""
        gross_remaining = gross_amount
        tax_paid = 0.0
        net_proceeds = 0.0
        taxable_total = 0.0
        shares_total = 0.0

        while gross_remaining > cfg.SALE_TOLERANCE and self.lots:
            index = select_lot_index(self.lots, method)
            lot = self.lots[index]
            gain_per_share = price - lot.price
            shares_needed = gross_remaining / price
            shares_sold = min(shares_needed, lot.shares)
            gross_from_sale = shares_sold * price

            taxable_gain = shares_sold * gain_per_share * exemption_factor
            part_tax = self.tax_on_gain(taxable_gain, allowance, annual_allowance, tax_rate)

            net_proceeds += gross_from_sale - part_tax
            taxable_total += taxable_gain
            shares_total += shares_sold
            tax_paid += part_tax
            gross_remaining -= gross_from_sale

            self._remove_or_reduce(index, shares_needed, shares_sold)

        shortfall = gross_remaining if gross_remaining > cfg.SALE_TOLERANCE else 0.0
        return SaleResult(
            remaining=shortfall,
            shortfall=shortfall,
            tax_paid=tax_paid,
            gross_proceeds=gross_amount - gross_remaining,
            net_proceeds=net_proceeds,
            taxable_gain=taxable_total,
            shares_sold=shares_total,
        )

    def consolidate(self, price_tolerance: float = cfg.LOT_PRICE_TOLERANCE):
        """
        Merge lots whose cost basis rounds to the same price step.

        Merged lots keep the share-weighted average price and the earliest
        month; the result is ordered by acquisition month. Total shares are
        unchanged.
        """
        if len(self.lots) <= 1:
            return
        grouped = {}
        for lot in self.lots:
            if lot.shares <= 0:
                continue
            key = round(round(lot.price / price_tolerance) * price_tolerance, 4)
            existing = grouped.get(key)
            if existing is None:
                grouped[key] = TaxLot(lot.shares, lot.price, lot.month)
            else:
                total = existing.shares + lot.shares
                existing.price = (existing.price * existing.shares + lot.price * lot.shares) / total
                existing.shares = total
                existing.month = min(existing.month, lot.month)
        self.lots = sorted(grouped.values(), key=lambda l: l.month)
