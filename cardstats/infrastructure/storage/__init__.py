"""Durable Storage Adapters.

Concrete KeyValueStorage implementations.
Bounded Context: Persistence
"""
