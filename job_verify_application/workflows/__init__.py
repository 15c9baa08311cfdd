"""Temporal workflows and activities for scheduled job URL verification."""
