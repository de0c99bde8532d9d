"""Infrastructure Layer: Contains concrete implementations and adapters.

Connects the application to the outside world (the listing site, durable
storage, the file system, the console) by implementing the interfaces
defined in the domain layer. Also holds configuration, logging setup and
the resilience primitives.
"""
