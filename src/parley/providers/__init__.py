"""Streaming chat clients for each backend family."""
