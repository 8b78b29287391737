"""Pipeline domain models."""
