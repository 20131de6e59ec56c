"""Catalogue of ready-made prompts."""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, Field


class ShaderPreset(BaseModel):
    id: str
    name: str
    description: str
    category: str
    difficulty: Literal["beginner", "intermediate", "advanced"]
    prompt: str
    tags: list[str] = Field(default_factory=list)


PRESETS: list[ShaderPreset] = [
    ShaderPreset(
        id="colorful-spiral",
        name="Colorful Spiral",
        description="A rotating spiral cycling through colours",
        category="abstract",
        difficulty="beginner",
        prompt="A colourful spiral that rotates and shifts through the spectrum over time",
        tags=["spiral", "colorful", "rotation"],
    ),
    ShaderPreset(
        id="geometric-kaleidoscope",
        name="Geometric Kaleidoscope",
        description="Symmetric geometric patterns that morph",
        category="abstract",
        difficulty="intermediate",
        prompt="A kaleidoscope of geometric shapes that morph while staying symmetric",
        tags=["kaleidoscope", "geometric", "symmetry"],
    ),
    ShaderPreset(
        id="ocean-waves",
        name="Ocean Waves",
        description="Rolling waves with foam",
        category="nature",
        difficulty="advanced",
        prompt="Realistic ocean waves with foam crests and depth-dependent colour",
        tags=["ocean", "waves", "water", "foam"],
    ),
    ShaderPreset(
        id="campfire-flames",
        name="Campfire Flames",
        description="Flickering fire with heat shimmer",
        category="nature",
        difficulty="advanced",
        prompt="Flickering campfire flames with rising embers and heat distortion",
        tags=["fire", "flames", "embers"],
    ),
    ShaderPreset(
        id="spiral-galaxy",
        name="Spiral Galaxy",
        description="A slowly turning galaxy full of stars",
        category="space",
        difficulty="intermediate",
        prompt="A spiral galaxy slowly rotating, with a bright core and dusty arms",
        tags=["galaxy", "stars", "space"],
    ),
    ShaderPreset(
        id="wormhole-portal",
        name="Wormhole Portal",
        description="A swirling tunnel through space-time",
        category="space",
        difficulty="advanced",
        prompt="A glowing wormhole tunnel that pulls the viewer forward through space",
        tags=["wormhole", "tunnel", "sci-fi"],
    ),
    ShaderPreset(
        id="mandelbrot-zoom",
        name="Mandelbrot Zoom",
        description="Endless zoom into the Mandelbrot set",
        category="mathematical",
        difficulty="intermediate",
        prompt="A smooth continuous zoom into the Mandelbrot set with banded colouring",
        tags=["fractal", "mandelbrot", "zoom"],
    ),
    ShaderPreset(
        id="sine-wave-interference",
        name="Sine Wave Interference",
        description="Overlapping waves forming interference patterns",
        category="mathematical",
        difficulty="beginner",
        prompt="Several circular sine waves overlapping into shifting interference patterns",
        tags=["waves", "interference", "math"],
    ),
    ShaderPreset(
        id="minimalist-geometry",
        name="Minimalist Geometry",
        description="Few clean shapes in slow motion",
        category="artistic",
        difficulty="beginner",
        prompt="A minimalist composition of a few clean geometric shapes drifting slowly",
        tags=["minimal", "geometric", "clean"],
    ),
]

_BY_ID = {preset.id: preset for preset in PRESETS}


def get_preset(preset_id: str) -> Optional[ShaderPreset]:
    return _BY_ID.get(preset_id)


def list_presets(
    category: Optional[str] = None, difficulty: Optional[str] = None
) -> list[ShaderPreset]:
    return [
        p
        for p in PRESETS
        if (category is None or p.category == category)
        and (difficulty is None or p.difficulty == difficulty)
    ]


def search_presets(query: str) -> list[ShaderPreset]:
    """Presets whose name, description, prompt or tags contain ``query``."""
    needle = query.lower()
    return [
        p
        for p in PRESETS
        if needle in p.name.lower()
        or needle in p.description.lower()
        or needle in p.prompt.lower()
        or any(needle in tag.lower() for tag in p.tags)
    ]
