"""Skill registry: the catalog of supported patterns, operations, and rules."""

from xlplan.skills.registry import PatternDefinition, SkillRegistry

__all__ = ["PatternDefinition", "SkillRegistry"]
