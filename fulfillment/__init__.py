"""
Retail Fulfillment Core

Order assembly, multi-currency pricing, variant inventory, offline
settlement and product rating aggregates for the retail back office.
"""

__version__ = "1.0.0"
