"""Settlement domain services."""
