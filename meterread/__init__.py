"""Readers for energy meters: D0 telegrams, files, commands, Flukso output and images."""

__version__ = "0.1.0"