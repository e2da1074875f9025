"""Shared infrastructure: logging, errors, HTTP and concurrency helpers."""
