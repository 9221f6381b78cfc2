"""CNC machine control and diagnostics core."""

__version__ = "1.0.0"
