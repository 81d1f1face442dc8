"""PulseCheck - scheduled HTTP checks with deduplicated e-mail alerts."""

__version__ = "1.0.0"
