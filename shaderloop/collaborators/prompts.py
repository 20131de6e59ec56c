"""Prompt templates for the AI collaborators."""

from __future__ import annotations

from typing import Optional, Sequence

_SHADERTOY_RULES = (
    "Return only the complete GLSL source, without explanations or markdown fences. "
    "Write a ShaderToy-compatible mainImage(out vec4 fragColor, in vec2 fragCoord) "
    "function. Do not declare uniforms such as iTime or iResolution; they are "
    "provided. Recursion is not supported."
)

CATEGORY_FOCUS = {
    "abstract": "geometric patterns, colour harmonies and smooth looping motion",
    "nature": "convincing natural phenomena with organic textures and movement",
    "space": "cosmic scenes, energy fields and dramatic lighting",
    "mathematical": "precise mathematical structures such as fractals and interference",
    "artistic": "a strong artistic vision with expressive use of colour and composition",
}

CATEGORY_KEYWORDS = {
    "nature": ["water", "fire", "ocean", "wave", "flame", "tree", "forest", "rain",
               "cloud", "wind", "mountain", "river", "flower", "grass"],
    "space": ["space", "galaxy", "star", "nebula", "planet", "cosmic", "universe",
              "comet", "black hole", "wormhole", "sci-fi", "futuristic"],
    "mathematical": ["fractal", "mandelbrot", "julia", "fibonacci", "golden ratio",
                     "equation", "mathematical", "geometry", "spiral"],
    "artistic": ["paint", "brush", "canvas", "artistic", "impressionist", "surreal",
                 "expressionist"],
    "abstract": ["abstract", "geometric", "pattern", "swirl", "vortex",
                 "kaleidoscope", "morphing", "flowing", "pulsing"],
}

STYLE_MODIFIERS = {
    "minimalist": "Keep the design clean with simple shapes and few colours.",
    "complex": "Layer intricate detail and rich patterns.",
    "vibrant": "Use bold, saturated, high-contrast colours.",
    "monochrome": "Use a single hue or grayscale and focus on form and contrast.",
    "retro": "Aim for an 80s computer-graphics look with a vintage palette.",
    "organic": "Prefer flowing curves and natural shapes over hard edges.",
}

STYLE_KEYWORDS = {
    "minimalist": ["minimal", "simple", "clean", "elegant"],
    "complex": ["complex", "detailed", "intricate", "elaborate"],
    "vibrant": ["vibrant", "colorful", "colourful", "bright", "bold", "neon"],
    "monochrome": ["black and white", "grayscale", "monochrome", "single color"],
    "retro": ["retro", "80s", "vintage", "pixel"],
    "organic": ["organic", "smooth", "curved", "soft"],
}

EVALUATION_SYSTEM_PROMPT = (
    "You are a shader art critic and technical reviewer. Judge how well a GLSL "
    "shader matches the user's request using its source and screenshots taken at "
    "increasing animation times. Score four criteria from 0 to 25 each: visual "
    "appeal, technical quality, prompt alignment and creativity. The overall "
    "score is their sum (0-100). Give concrete feedback and a short list of "
    "specific suggestions for the next revision."
)

IMPROVEMENT_SYSTEM_PROMPT = (
    "You are a shader programming expert. Improve the given GLSL shader using the "
    "reviewer feedback and screenshots. Keep what already works and make targeted "
    "changes. " + _SHADERTOY_RULES
)

FIX_SYSTEM_PROMPT = (
    "You are a GLSL debugging expert. Fix the compilation errors in the given "
    "shader while keeping its intended look. Watch for duplicate uniform "
    "declarations, syntax errors and GLSL version issues. " + _SHADERTOY_RULES
)


def categorize_prompt(prompt: str) -> str:
    """Return the category whose keywords best match ``prompt``."""
    lowered = prompt.lower()
    best, best_hits = "abstract", 0
    for category, keywords in CATEGORY_KEYWORDS.items():
        hits = sum(1 for k in keywords if k in lowered)
        if hits > best_hits:
            best, best_hits = category, hits
    return best


def detect_style(prompt: str) -> str:
    lowered = prompt.lower()
    for style, keywords in STYLE_KEYWORDS.items():
        if any(k in lowered for k in keywords):
            return style
    return "vibrant"


def generation_system_prompt(prompt: str) -> str:
    focus = CATEGORY_FOCUS[categorize_prompt(prompt)]
    return (
        "You write animated GLSL shaders in the style of ShaderToy. The result "
        f"should be visually striking and focus on {focus}. " + _SHADERTOY_RULES
    )


def generation_user_prompt(prompt: str) -> str:
    return f"{prompt}\n\nStyle: {STYLE_MODIFIERS[detect_style(prompt)]}"


def _time_captions(count: int, time_values: Sequence[float]) -> str:
    lines = []
    for index in range(count):
        t = f"{time_values[index]:g}s" if index < len(time_values) else "unknown"
        lines.append(f"Screenshot {index + 1}: iTime = {t}")
    return "\n".join(lines)


def evaluation_user_prompt(
    prompt: str, code: str, image_count: int, time_values: Sequence[float]
) -> str:
    return (
        f"Prompt: {prompt}\n\nShader code:\n```glsl\n{code}\n```\n\n"
        f"Screenshots:\n{_time_captions(image_count, time_values)}\n\n"
        "Evaluate how well this shader matches the prompt, taking the animation "
        "across the time values into account."
    )


def improvement_user_prompt(
    prompt: str,
    code: str,
    feedback: str,
    image_count: int,
    time_values: Sequence[float],
) -> str:
    return (
        f"Original prompt: {prompt}\n\nCurrent shader code:\n```glsl\n{code}\n```\n\n"
        f"Feedback: {feedback}\n\n"
        f"Screenshots:\n{_time_captions(image_count, time_values)}\n\n"
        "Improve the shader so it matches the prompt better."
    )


def fix_user_prompt(
    prompt: str, code: str, error_message: str, error_detail: Optional[str] = None
) -> str:
    text = (
        f"Original prompt: {prompt}\n\nShader code with a compilation error:\n"
        f"```glsl\n{code}\n```\n\nCompilation error: {error_message}\n"
    )
    if error_detail:
        text += f"\nInfo log: {error_detail}\n"
    return text + "\nFix the errors while keeping the shader's intended behaviour."
