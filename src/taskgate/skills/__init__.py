"""Skill capability gate: SKILL.md parsing, static scanning and the registry."""
