"""Liveness verification for third-party job application URLs."""
