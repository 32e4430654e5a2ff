"""Continuation controller, heartbeat supervisor and their collaborators."""
