"""Configuration, models, errors and logging."""
