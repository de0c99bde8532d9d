"""cardstats: cached owner/want counts for trading-card listings."""

__version__ = "0.1.0"
