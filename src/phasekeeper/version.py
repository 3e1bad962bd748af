"""Version information for phasekeeper."""

__version__ = "0.1.0"
