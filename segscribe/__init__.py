"""Segmented transcription orchestration: jobs, provider submissions, webhooks and live progress."""

__version__ = "0.1.0"
