"""Domain-level helpers for planning prompts and their response schemas."""

from .prompt_builder import (  # noqa: F401
    BRIEF_SCHEMA,
    CONCEPTS_SCHEMA,
    METADATA_SCHEMA,
    STORYBOARD_SCHEMA,
    build_brief_prompt,
    build_concepts_prompt,
    build_metadata_prompt,
    build_storyboard_prompt,
    enhance_image_prompt,
)

__all__ = [
    "BRIEF_SCHEMA",
    "CONCEPTS_SCHEMA",
    "METADATA_SCHEMA",
    "STORYBOARD_SCHEMA",
    "build_brief_prompt",
    "build_concepts_prompt",
    "build_metadata_prompt",
    "build_storyboard_prompt",
    "enhance_image_prompt",
]
