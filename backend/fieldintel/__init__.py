"""Field Intel: voice-note to CRM pipeline."""

__version__ = "0.1.0"
