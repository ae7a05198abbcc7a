"""silkparse - queued print-effect extraction for card design files."""

__version__ = "1.1.0"
