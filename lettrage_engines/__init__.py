"""
Pure calculation engines for payment allocation.

Engines take DTOs and return DTOs; they never touch the database.
"""

from lettrage_engines.allocation import AllocationPlanner

__all__ = ["AllocationPlanner"]
