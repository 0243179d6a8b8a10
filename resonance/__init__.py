"""Resonance package initializer.

The analysis core lives in ``resonance.pipeline``; this file exposes
nothing itself.
"""
