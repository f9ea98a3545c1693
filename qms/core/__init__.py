"""Core cross-cutting types: exceptions and operation results."""
