"""DiffTune: gradient-based tuning of drive-train controller gains via forward sensitivity propagation."""

__version__ = "0.1.0"
