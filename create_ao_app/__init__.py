"""create-ao-app: run AO worker processes alongside web projects."""

__version__ = "1.0.5"
