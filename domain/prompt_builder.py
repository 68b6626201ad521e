"""Prompt text and response schemas for the planning calls."""
from __future__ import annotations

import json
from typing import Any, Dict

CONCEPTS_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "concepts": {
            "type": "array",
            "items": {"type": "string", "minLength": 1},
            "minItems": 1,
        }
    },
    "required": ["concepts"],
}

BRIEF_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "product_name": {"type": "string"},
        "target_audience": {"type": "string"},
        "key_benefits": {"type": "array", "items": {"type": "string"}},
        "hook": {"type": "string"},
        "tone": {"type": "string"},
    },
    "required": ["product_name", "target_audience", "key_benefits", "hook"],
}

STORYBOARD_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "scenes": {
            "type": "array",
            "minItems": 1,
            "items": {
                "type": "object",
                "properties": {
                    "veo_prompt": {"type": "string", "minLength": 1},
                    "display_voice_over": {"type": "string"},
                    "overlay_text": {"type": "string"},
                },
                "required": ["veo_prompt", "display_voice_over"],
            },
        }
    },
    "required": ["scenes"],
}

METADATA_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "title": {"type": "string", "description": "A short, catchy title for the asset (5-10 words)."},
        "description": {"type": "string", "description": "A detailed, SEO-friendly description (2-3 sentences)."},
        "tags": {"type": "array", "items": {"type": "string"}, "description": "5-10 relevant keywords."},
    },
    "required": ["title", "description", "tags"],
}

_LANGUAGE_NAMES = {
    "english": "English",
    "indonesia": "Bahasa Indonesia",
}


def language_name(language: str) -> str:
    return _LANGUAGE_NAMES.get((language or "").strip().lower(), "English")


def build_concepts_prompt(topic: str, count: int) -> str:
    return (
        f"Generate {count} distinct, highly-detailed, and commercially-viable stock photo concepts "
        f'based on the following topic: "{topic.strip()}". Each concept should be a single, complete '
        "sentence ready to be used as an image generation prompt."
    )


def build_brief_prompt(description: str, language: str) -> str:
    return "\n".join(
        [
            "You are a marketing analyst preparing a short-form affiliate video.",
            "Study the attached product photo and the seller's description, then write a creative brief.",
            f"Write every field in {language_name(language)}.",
            f"Product description: {description.strip()}",
        ]
    )


def build_storyboard_prompt(brief: Dict[str, Any], language: str, aspect_ratio: str, scene_count: int) -> str:
    return "\n".join(
        [
            f"Turn this creative brief into a storyboard of exactly {scene_count} scenes for a {aspect_ratio} video.",
            "For each scene give a cinematic, self-contained text-to-video prompt (veo_prompt) in English,",
            f"the voice-over line shown to the viewer (display_voice_over) in {language_name(language)},",
            "and an optional short on-screen caption (overlay_text).",
            "The first scene must feature the product exactly as it appears in the reference photo.",
            "Brief:",
            json.dumps(brief, ensure_ascii=False, indent=2),
        ]
    )


def build_metadata_prompt(prompt: str, asset_type: str) -> str:
    return (
        f"Generate metadata for a stock {asset_type} created from the following prompt. "
        f'The metadata should be suitable for a stock media platform. The prompt is: "{prompt.strip()}"'
    )


def enhance_image_prompt(prompt: str) -> str:
    return (
        f"{prompt.strip()}, ultra-realistic, photorealistic, professional photography, 4k, sharp focus, "
        "detailed, cinematic lighting, shot on a professional camera."
    )
