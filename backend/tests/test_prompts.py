import pytest

from services.errors import InvalidInputError
from services.prompts import (
    DEFAULT_FIGURE_KEY,
    FIGURES,
    GENDER_CLAUSE,
    NEUTRAL_BACKGROUND,
    SCENES,
    build_composite_prompt,
    build_inpaint_instructions,
    normalize_gender,
    resolve_figure,
    resolve_scene,
    with_subject_description,
)


def test_prompt_is_deterministic():
    figure = resolve_figure("sea_captain")
    scene = resolve_scene("beach")
    first = build_composite_prompt(figure, "woman", scene)
    second = build_composite_prompt(figure, "woman", scene)
    assert first == second


def test_scene_description_embedded_verbatim():
    scene = SCENES["stadium"]
    prompt = build_composite_prompt(FIGURES["astronaut"], None, scene)
    assert f"Scene: {scene.description}." in prompt
    assert NEUTRAL_BACKGROUND not in prompt


def test_no_scene_uses_neutral_background():
    prompt = build_composite_prompt(FIGURES["astronaut"])
    assert "Scene:" not in prompt
    assert NEUTRAL_BACKGROUND in prompt
    for scene in SCENES.values():
        assert scene.description not in prompt


def test_astronaut_with_portuguese_gender_tag():
    figure = resolve_figure("astronaut")
    gender = normalize_gender("homem")
    prompt = build_composite_prompt(figure, gender, resolve_scene(None))

    assert gender == "man"
    assert GENDER_CLAUSE.format(gender="man") in prompt
    for trait in figure.traits:
        assert trait in prompt
    assert "Scene:" not in prompt
    assert prompt.startswith("Generate a high-quality, photorealistic photograph of the Astronaut")
    assert "The Astronaut has these distinguishing traits:" in prompt


def test_prompt_without_gender_has_no_gender_clause():
    prompt = build_composite_prompt(FIGURES["sea_captain"])
    assert "The reference person is a" not in prompt
    assert "Do NOT blend" in prompt


@pytest.mark.parametrize("key", [None, "", "unknown-figure"])
def test_unknown_figure_falls_back_to_default(key):
    assert resolve_figure(key) is FIGURES[DEFAULT_FIGURE_KEY]


def test_figure_lookup_ignores_case_and_whitespace():
    assert resolve_figure("  Sea_Captain ").key == "sea_captain"


def test_unknown_scene_is_rejected():
    with pytest.raises(InvalidInputError) as exc_info:
        resolve_scene("moon")
    assert "moon" in exc_info.value.message
    assert exc_info.value.status_code == 400


@pytest.mark.parametrize("key", [None, "", "   "])
def test_blank_scene_means_no_scene(key):
    assert resolve_scene(key) is None


@pytest.mark.parametrize(
    "tag, expected",
    [
        ("homem", "man"),
        ("MULHER", "woman"),
        ("female", "woman"),
        ("pessoa", "person"),
        ("robot", None),
        ("", None),
        (None, None),
    ],
)
def test_normalize_gender(tag, expected):
    assert normalize_gender(tag) == expected


def test_subject_description_is_appended():
    prompt = build_composite_prompt(FIGURES["astronaut"])
    combined = with_subject_description(prompt, "  a young woman with curly black hair ")
    assert combined.startswith(prompt)
    assert combined.endswith("a young woman with curly black hair")
    assert with_subject_description(prompt, "   ") == prompt


def test_inpaint_instructions_mention_mask():
    prompt = build_inpaint_instructions("base prompt")
    assert prompt.startswith("base prompt")
    assert "white area of the mask" in prompt
