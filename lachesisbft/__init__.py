"""BFT consensus over a DAG of events: checks, Atropos election, ordering and parent selection."""

__version__ = "0.1.0"