"""Simulated RPC, a checked codec, a key/value model and a MapReduce framework."""

__version__ = "0.1.0"