"""PAN: interaction-proof-gated request signing."""

__version__ = "0.1.0"
