"""Adapters connecting the core to storage, logging, HTTP and notifications."""
