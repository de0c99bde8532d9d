"""Count Cache Implementation.

Provides the tiered-TTL store of last known owner/want counts with debounced,
chunk-capable persistence to durable storage.
Bounded Context: Cache Management
"""
