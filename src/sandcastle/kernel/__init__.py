"""Kernel layer - sandbox configuration, invocation and lifecycle."""
