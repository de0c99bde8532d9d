"""Application services: count estimation and acquisition scheduling."""
