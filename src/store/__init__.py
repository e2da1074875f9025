"""Integrity verification and the content-addressed package cache."""
