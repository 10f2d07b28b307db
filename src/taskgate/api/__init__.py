"""Exposed task and skill surfaces returning JSON-ready Results."""
