"""Remote Count Source Adapters.

Bounded Context: Listing Access
"""
