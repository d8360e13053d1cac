"""PRTG connector: query, resource, health and streaming endpoints over the PRTG API."""

__version__ = "0.1.0"
