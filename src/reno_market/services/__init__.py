"""Service layer for the marketplace ranking and billing core."""
