"""Flask JSON API for caregate."""
