"""Safety layer: prompt-injection detection shared by the skill gate."""

from taskgate.safety.injection import detect_injection, load_extra_patterns

__all__ = ["detect_injection", "load_extra_patterns"]
