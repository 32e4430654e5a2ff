"""Durable file-backed stores shared by the controller, supervisor and status surface."""
