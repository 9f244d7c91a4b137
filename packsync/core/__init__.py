"""Core - errors, external APIs, downloads and the remote filesystem."""
