"""
Lettrage Kernel

Payment allocation core for the dispatch/billing platform:
- Balance aggregation over stored invoices
- Idempotent payment application
- Optimistic concurrency on invoice versions
- Integer minor-unit money throughout
"""

__version__ = "0.1.0"
