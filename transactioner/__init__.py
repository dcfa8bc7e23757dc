"""Transaction validator: scores, batches and commits account transactions."""

__version__ = "0.1.0"