"""Structured narrative extraction over an unreliable text generator."""

from storyforge.config import Settings, load_settings
from storyforge.engine import StoryForge
from storyforge.pipeline import PipelineResult, run_pipeline

__all__ = ["PipelineResult", "Settings", "StoryForge", "load_settings", "run_pipeline"]
