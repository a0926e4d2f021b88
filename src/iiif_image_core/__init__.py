"""IIIF Image API request resolution engine."""

__version__ = "0.3.0"
