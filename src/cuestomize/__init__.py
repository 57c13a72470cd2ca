"""Cuestomize: fetch and publish CUE modules as OCI artifacts."""

__version__ = "0.1.0"
