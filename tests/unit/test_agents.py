import pytest
from pydantic_ai.models.test import TestModel

from shaderloop.collaborators import AgentStudio, EvaluationReport, clean_shader_code
from shaderloop.collaborators.agents import image_content
from shaderloop.collaborators.prompts import categorize_prompt, detect_style
from shaderloop.config import LLMConfig
from shaderloop.contracts import EvaluationCriteria
from shaderloop.errors import EmptyOutputError

from conftest import SCREENSHOT

SHADER = "void mainImage(out vec4 fragColor, in vec2 fragCoord) { fragColor = vec4(0.0); }"


def test_clean_shader_code_strips_fences():
    assert clean_shader_code(f"```glsl\n{SHADER}\n```") == SHADER
    assert clean_shader_code(f"  {SHADER}  ") == SHADER
    assert clean_shader_code("```\n```") == ""


def test_image_content_decodes_data_urls():
    content = image_content(SCREENSHOT)
    assert content.media_type == "image/png"
    assert content.data.startswith(b"\x89PNG")
    bare = image_content(SCREENSHOT.split(",", 1)[1])
    assert bare.data == content.data


def test_prompt_classification():
    assert categorize_prompt("ocean waves crashing at night") == "nature"
    assert categorize_prompt("a spiral galaxy with bright stars") == "space"
    assert categorize_prompt("something nice") == "abstract"
    assert detect_style("a minimal clean logo") == "minimalist"
    assert detect_style("something nice") == "vibrant"


def test_evaluation_report_score():
    criteria = EvaluationCriteria(
        visual_appeal=20, technical_quality=20, prompt_alignment=15, creativity=10
    )
    assert EvaluationReport(criteria=criteria, feedback="ok").overall() == 65
    assert EvaluationReport(criteria=criteria, feedback="ok", score=130).overall() == 100


@pytest.mark.asyncio
async def test_generate_returns_clean_code_and_interaction():
    studio = AgentStudio(model=TestModel(custom_output_text=f"```glsl\n{SHADER}\n```"))

    result = await studio.generate("ocean waves crashing at night")
    assert result.code == SHADER
    interaction = result.interaction
    assert interaction.role == "generation"
    assert interaction.model == "test"
    assert "convincing natural phenomena" in interaction.prompt
    assert "ocean waves crashing at night" in interaction.prompt
    assert interaction.response.startswith("```glsl")
    assert interaction.duration >= 0
    assert interaction.token_usage is not None


@pytest.mark.asyncio
async def test_blank_generation_is_an_error():
    studio = AgentStudio(model=TestModel(custom_output_text="```glsl\n```"))
    with pytest.raises(EmptyOutputError):
        await studio.generate("a red circle")


@pytest.mark.asyncio
async def test_evaluate_scores_criteria_and_limits_images():
    model = TestModel(
        custom_output_args={
            "criteria": {
                "visual_appeal": 20,
                "technical_quality": 22,
                "prompt_alignment": 18,
                "creativity": 15,
            },
            "feedback": "Smooth motion, colours a bit flat.",
            "suggestions": ["Add a glow"],
        }
    )
    studio = AgentStudio(LLMConfig(max_evaluation_images=5), model=model)

    result = await studio.evaluate("a red circle", SHADER, [SCREENSHOT] * 7)
    assert result.score == 75
    assert result.feedback == "Smooth motion, colours a bit flat."
    assert result.suggestions == ["Add a glow"]
    assert result.criteria.technical_quality == 22
    prompt = result.interaction.prompt
    assert "Screenshot 5: iTime = 1.2s" in prompt
    assert "Screenshot 6" not in prompt
    assert "5 images attached" in prompt


@pytest.mark.asyncio
async def test_improve_and_fix_use_their_prompts():
    studio = AgentStudio(
        model=TestModel(custom_output_text=SHADER), time_values=[1.0, 2.0]
    )

    improved = await studio.improve(
        "a red circle", "void mainImage() {}", "too dark", [SCREENSHOT] * 4
    )
    assert improved.code == SHADER
    assert improved.interaction.role == "improvement"
    assert "Feedback: too dark" in improved.interaction.prompt
    assert "Screenshot 2: iTime = 2s" in improved.interaction.prompt
    assert "Screenshot 3: iTime = unknown" in improved.interaction.prompt

    fixed = await studio.fix(
        "a red circle", "void mainImage() {", "syntax error", "ERROR: 0:1: '{'"
    )
    assert fixed.code == SHADER
    assert fixed.interaction.role == "fix"
    assert "Compilation error: syntax error" in fixed.interaction.prompt
    assert "Info log: ERROR: 0:1: '{'" in fixed.interaction.prompt
