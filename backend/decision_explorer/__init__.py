"""Clinical decision-pathway engine."""

__version__ = "1.0.0"
