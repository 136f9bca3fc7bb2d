"""spray serves static websites straight out of an object storage bucket."""

__version__ = "0.4.0"
