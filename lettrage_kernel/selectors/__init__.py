"""Read-only selectors."""

from lettrage_kernel.selectors.balance_selector import BalanceSelector

__all__ = ["BalanceSelector"]
