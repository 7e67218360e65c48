"""SMS opt-in/opt-out consent tracking and gated sending."""

__version__ = "1.0.0"
