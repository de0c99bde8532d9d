"""Request Resilience Implementations.

Contains services for staying inside the outbound request budget and for
retrying failed listing requests with exponential backoff.
Bounded Context: Request Resilience
"""
