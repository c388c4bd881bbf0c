"""
Prompt construction for the compose pipeline.

Everything here is pure string composition: the same (figure, gender, scene)
always yields the same prompt.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from .errors import InvalidInputError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Figure:
    key: str
    name: str
    traits: Tuple[str, ...]


@dataclass(frozen=True)
class Scene:
    key: str
    label: str
    description: str


FIGURES: Dict[str, Figure] = {
    "astronaut": Figure(
        key="astronaut",
        name="the Astronaut",
        traits=(
            "white full-body spacesuit with colorful mission patches",
            "helmet tucked under the left arm",
            "short silver hair and a neatly trimmed grey beard",
            "tall, broad-shouldered build, around sixty years old",
        ),
    ),
    "sea_captain": Figure(
        key="sea_captain",
        name="the Sea Captain",
        traits=(
            "navy double-breasted coat with brass buttons",
            "white captain's hat with a black visor",
            "thick red beard and bushy eyebrows",
            "weathered, sun-tanned face with deep smile lines",
            "stocky build, around fifty years old",
        ),
    ),
}

DEFAULT_FIGURE_KEY = "astronaut"

SCENES: Dict[str, Scene] = {
    scene.key: scene
    for scene in (
        Scene("beach", "Beach", "a sunny tropical beach at golden hour, turquoise water and palm trees behind them"),
        Scene("stadium", "Stadium", "the stands of a packed football stadium at night under bright floodlights"),
        Scene("office", "Office", "a modern open-plan office with large windows and plants on the desks"),
        Scene("party", "Birthday party", "a lively birthday party in a living room with balloons and a decorated cake"),
        Scene("mountain", "Mountain summit", "a rocky mountain summit on a clear day with snowy peaks in the distance"),
    )
}

GENDER_LABELS = {
    "homem": "man",
    "masculino": "man",
    "man": "man",
    "male": "man",
    "mulher": "woman",
    "feminino": "woman",
    "woman": "woman",
    "female": "woman",
    "pessoa": "person",
    "person": "person",
}

IDENTITY_CONSTRAINTS = (
    "The second person is the person in the attached reference photo. "
    "Their face, facial features, skin tone, hair and body shape must be IDENTICAL to the reference photo. "
    "Do NOT blend, merge or average their face with {name}'s face. "
    "The reference person keeps 100% of their original identity; {name} appears as a separate, distinct person."
)

GENDER_CLAUSE = "The reference person is a {gender}; keep their gender presentation exactly as in the reference photo."

NEUTRAL_BACKGROUND = "Use a simple, neutral, well-lit background."

VISION_PROMPT = (
    "Describe the person in this photo so an illustrator could draw them consistently: "
    "apparent gender presentation, approximate age range, skin tone, hair color and style, "
    "facial hair, glasses or accessories, clothing and pose. "
    "Answer in one short paragraph of plain text. Do not guess who the person is."
)


def resolve_figure(key: Optional[str]) -> Figure:
    """Known figure for key; anything else falls back to the default figure."""
    figure = FIGURES.get((key or "").strip().lower())
    if figure is None:
        if key:
            logger.warning(f"Unknown figure {key!r}, using {DEFAULT_FIGURE_KEY}")
        figure = FIGURES[DEFAULT_FIGURE_KEY]
    return figure


def resolve_scene(key: Optional[str]) -> Optional[Scene]:
    if not key or not key.strip():
        return None
    scene = SCENES.get(key.strip().lower())
    if scene is None:
        raise InvalidInputError(f"Unknown scene {key!r}. Known scenes: {', '.join(sorted(SCENES))}")
    return scene


def normalize_gender(tag: Optional[str]) -> Optional[str]:
    if not tag or not tag.strip():
        return None
    label = GENDER_LABELS.get(tag.strip().lower())
    if label is None:
        logger.warning(f"Ignoring unknown gender tag {tag!r}")
    return label


def build_composite_prompt(figure: Figure, gender: Optional[str] = None, scene: Optional[Scene] = None) -> str:
    """
    Build the compositing instruction for the image model.

    Args:
        figure: target figure rendered next to the reference person.
        gender: normalized gender label ("man", "woman", "person") or None.
        scene: scene record whose description is embedded verbatim, or None.
    """
    name = figure.name
    lines = [
        f"Generate a high-quality, photorealistic photograph of {name} standing next to another person.",
        IDENTITY_CONSTRAINTS.format(name=name),
        f"{name[0].upper()}{name[1:]} has these distinguishing traits: {'; '.join(figure.traits)}.",
        f"Render {name} with exactly these traits so they look clearly different from the reference person.",
    ]
    if gender:
        lines.append(GENDER_CLAUSE.format(gender=gender))
    if scene is not None:
        lines.append(f"Scene: {scene.description}.")
    else:
        lines.append(NEUTRAL_BACKGROUND)
    lines.append(
        "Both are smiling at the camera in a friendly, casual pose. "
        "Match lighting, shadows and color grading so the photo looks authentic, with no artifacts."
    )
    return "\n".join(lines)


def with_subject_description(prompt: str, description: str) -> str:
    description = (description or "").strip()
    if not description:
        return prompt
    return f"{prompt}\n\nReference person, for identity only (do not copy these traits onto the figure): {description}"


def build_inpaint_instructions(prompt: str) -> str:
    return (
        f"{prompt}\n\n"
        "After the reference photo, a base photo and a black-and-white mask are attached. "
        "Edit the base photo: repaint only the white area of the mask and leave every pixel outside it untouched."
    )
