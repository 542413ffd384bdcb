"""caregate – capability-based authorization and prescription lifecycle engine."""

__version__ = "1.0.0"
