"""Wiring: builds the store, registry, runner and scheduler from Settings."""
