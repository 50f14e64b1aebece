"""Agent Bridge: a streaming tool-calling loop over a persistent connection."""

__version__ = "0.3.0"
