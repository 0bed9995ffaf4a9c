"""DMARC aggregate report intake, AI assessment and alerting pipeline."""

__version__ = "0.1.0"
