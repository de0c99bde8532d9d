"""Domain Layer: models, events, errors and the interfaces adapters implement."""
