"""Core Synthesis: sediment core catalog, age models and composite splices."""

__version__ = '0.3.0'
