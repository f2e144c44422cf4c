"""HTTP control plane for the credit accounting core."""

__version__ = "0.4.0"
