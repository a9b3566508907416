"""Trialgate — offline-tolerant trial and device registration licensing."""

__version__ = "0.1.0"
