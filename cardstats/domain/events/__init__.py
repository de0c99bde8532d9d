"""Domain Event definitions.

Represents significant occurrences during count acquisition that other parts
of the system (logging, presentation) might react to.
"""
