"""Verification, build and co-sign runtime."""
