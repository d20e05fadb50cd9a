"""
Operations - Build generation requests for each node operation.

Each function turns resolved inputs into a provider-agnostic
GenerationRequest. None of them perform I/O.
"""

from __future__ import annotations

from typing import Any

from bananaflow.core.graph import GARMENT_PORT, IMAGE_PORT, MODEL_PORT, PROMPT_PORT
from bananaflow.core.media import mark_point
from bananaflow.core.node_data import NodeKind
from bananaflow.core.resolution import MissingInputError
from bananaflow.providers.base import GenerationRequest, OutputFormat


FRAMES_PER_SHEET = 12
SHEET_ROWS = 3
SHEET_ASPECT_RATIO = "4:3"

OUTPAINT_DIRECTIONS = {
    "up": "Extend the image upwards.",
    "down": "Extend the image downwards.",
    "left": "Extend the image to the left.",
    "right": "Extend the image to the right.",
    "zoom-out": "Zoom out, extending the image in all directions.",
}

ECOMMERCE_MODES = ("model", "extract", "try_on", "ref_extract")

CHARACTER_FIELDS = (
    "style", "head", "eyes", "nose", "mouth", "expression", "clothing",
    "upper_body", "lower_body", "shoes", "held_item",
)

CHARACTER_SCHEMA: dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        **{name: {"type": "STRING"} for name in CHARACTER_FIELDS},
        "feature_points": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "label": {"type": "STRING"},
                    "x": {"type": "NUMBER"},
                    "y": {"type": "NUMBER"},
                },
            },
        },
    },
}


def text_to_image(prompt: str, references: list[str], aspect_ratio: str | None = None) -> GenerationRequest:
    if references:
        prompt = (
            "Follow the style, character and composition of the images above closely. "
            + prompt
        )
    return GenerationRequest(
        prompt=prompt,
        images=list(references),
        aspect_ratio=aspect_ratio or "1:1",
    )


def sketch_to_image(prompt: str, sketch: str) -> GenerationRequest:
    return GenerationRequest(
        prompt=(
            "The attached image is a composition sketch. Keep its structure "
            f"exactly. Instruction: {prompt}"
        ),
        images=[sketch],
        aspect_ratio="1:1",
    )


def edit_image(image: str, prompt: str) -> GenerationRequest:
    return GenerationRequest(
        prompt=f"Edit instruction: {prompt}. Keep the composition similar.",
        images=[image],
    )


def enhance_image(image: str) -> GenerationRequest:
    return GenerationRequest(
        prompt="Enhance this image: sharper, more detailed, higher resolution.",
        images=[image],
    )


def inpaint_image(image: str, mask: str, prompt: str) -> GenerationRequest:
    return GenerationRequest(
        prompt=f"Fill the white area of the mask with: {prompt}. Blend seamlessly.",
        images=[image, mask],
    )


def extend_image(image: str, prompt: str, direction: str, aspect_ratio: str | None = None) -> GenerationRequest:
    parts = [OUTPAINT_DIRECTIONS.get(direction, "Extend the image.")]
    if prompt:
        parts.append(f"{prompt}.")
    parts.append("Seamless integration.")
    return GenerationRequest(
        prompt=" ".join(parts),
        images=[image],
        aspect_ratio=aspect_ratio,
    )


def describe_image(image: str, language: str = "English") -> GenerationRequest:
    return GenerationRequest(
        prompt=(
            f"Describe this image in detail in {language}. Cover the visual "
            "elements, style, lighting and composition so the text can be "
            "used as an image generation prompt."
        ),
        images=[image],
        output=OutputFormat.TEXT,
    )


def analyze_character(image: str, language: str = "English") -> GenerationRequest:
    return GenerationRequest(
        prompt=(
            "Analyze the character in the image. Describe style, clothing and "
            "facial features, and estimate the centers of the eyes, nose and "
            "mouth on a 0-100 scale as feature_points. "
            f"Write every description in {language}."
        ),
        images=[image],
        output=OutputFormat.JSON,
        response_schema=CHARACTER_SCHEMA,
    )


def identify_element(image: str, x: float, y: float, language: str = "English") -> GenerationRequest:
    """Ask for the name of whatever sits under a red marker at (x%, y%)."""
    return GenerationRequest(
        prompt=(
            "Identify the specific object or feature inside the RED CIRCLE. "
            f"Return ONLY its name in {language}, for example hair, left eye, "
            "sleeve or belt. Do not include any other text."
        ),
        images=[mark_point(image, x, y)],
        output=OutputFormat.TEXT,
    )


def character_from_attributes(image: str, attributes: dict[str, Any]) -> GenerationRequest:
    images = [image]
    edits = attributes.get("customEdits") or []
    lines = []
    for i, edit in enumerate(edits, start=1):
        refs = ""
        for ref in edit.get("referenceImages") or []:
            refs += f" [use image #{len(images)} as visual reference]"
            images.append(ref)
        x = round(float(edit.get("x", 0)))
        y = round(float(edit.get("y", 0)))
        lines.append(f"[{i}] At {x}%, {y}%: {edit.get('prompt', '')}{refs}")

    description = ", ".join(
        str(attributes[name]) for name in ("style", "head", "clothing") if attributes.get(name)
    )
    prompt = f"Character: {description}."
    if lines:
        prompt += "\nRegional edits:\n" + "\n".join(lines)

    view = attributes.get("view")
    if view:
        prompt = f"View rotation, override the pose. Target view: {view}. {prompt}"
    else:
        prompt = f"Reconstruction, keep the pose. {prompt}"
    return GenerationRequest(prompt=prompt, images=images, aspect_ratio="1:1")


def describe_pose(image: str, language: str = "English") -> GenerationRequest:
    return GenerationRequest(
        prompt=(
            f"Describe the character's pose in one or two sentences of {language}: "
            "head tilt and gaze, hand gestures, leg stance and body lean. No lists."
        ),
        images=[image],
        output=OutputFormat.TEXT,
    )


def pose_from_text(image: str, prompt: str, aspect_ratio: str | None = None) -> GenerationRequest:
    return GenerationRequest(
        prompt=(
            "Image #0 is the character reference (identity, outfit, art style). "
            f"Generate the same character performing this action: {prompt}. "
            "Keep the identity; do not copy the pose or composition of image #0."
        ),
        images=[image],
        aspect_ratio=aspect_ratio or "1:1",
    )


def pose_from_skeleton(
    skeleton: str,
    prompt: str,
    original: str | None = None,
    aspect_ratio: str | None = None,
) -> GenerationRequest:
    images = [skeleton]
    reference = ""
    if original:
        images.append(original)
        reference = " Image #1 is the character reference (style, identity)."
    return GenerationRequest(
        prompt=(
            "Image #0 is a volumetric mannequin defining the target pose; treat "
            f"its shading as depth.{reference} Render the character in exactly "
            f"that pose. Prompt: {prompt}. Do not draw the mannequin, a stick "
            "figure or a skeleton; produce a fully rendered illustration."
        ),
        images=images,
        aspect_ratio=aspect_ratio or "1:1",
    )


def ecommerce_image(
    mode: str,
    model: str | None = None,
    garment: str | None = None,
    attributes: dict[str, Any] | None = None,
    prompt: str = "",
) -> GenerationRequest:
    """
    Build an e-commerce request.

    Raises:
        MissingInputError: The mode needs an image that was not resolved.
        ValueError: Unknown mode.
    """
    attributes = attributes or {}
    if mode == "model":
        text = (
            "Professional e-commerce fashion model photo. "
            f"Subject: {attributes.get('age', 'Young Adult')} "
            f"{attributes.get('ethnicity', 'Universal')} "
            f"{attributes.get('gender', 'Female')} model. "
            f"Attire: {attributes.get('clothingStyle', 'Casual')}. "
            f"Setting: {attributes.get('setting', 'Studio')}. "
            "Neutral standing pose, studio lighting, photorealistic."
        )
        if prompt:
            text += f" Additional details: {prompt}"
        images: list[str] = []
    elif mode == "extract":
        if not model:
            raise MissingInputError("Original image required for extraction.")
        text = (
            "Extract only the main clothing item from this photo as a ghost "
            "mannequin shot: remove the body and background, place the garment "
            "on pure white, keep textures and lighting."
        )
        images = [model]
    elif mode == "ref_extract":
        source = garment or model
        if not source:
            raise MissingInputError("Source image required for reference extraction.")
        text = (
            "Isolate the garment in this product photo, straighten it to a flat "
            "front view on pure white with even lighting and full texture detail."
        )
        images = [source]
    elif mode == "try_on":
        if not model:
            raise MissingInputError("Model image required for try-on.")
        if not garment:
            raise MissingInputError("Garment image required for try-on.")
        text = (
            "Virtual try-on. Image #0 is the model, image #1 the garment. Show "
            "the model wearing the garment, preserving the model's identity and "
            "pose and the garment's texture, pattern and color."
        )
        images = [model, garment]
    else:
        raise ValueError(f"Unknown e-commerce mode: {mode}")
    return GenerationRequest(prompt=text, images=images, aspect_ratio="3:4")


def sprite_sheet(prompt: str, reference: str | None = None) -> GenerationRequest:
    return GenerationRequest(
        prompt=(
            f"Create a sprite sheet of exactly {FRAMES_PER_SHEET} frames in a "
            f"4 column x {SHEET_ROWS} row grid. Subject: {prompt}. Green background."
        ),
        images=[reference] if reference else [],
        aspect_ratio=SHEET_ASPECT_RATIO,
    )


def sheet_count(frame_count: int) -> int:
    """Number of sprite sheets needed for ``frame_count`` frames."""
    return max(1, -(-frame_count // FRAMES_PER_SHEET))


def workflow_plan(text: str, image: str | None = None) -> GenerationRequest:
    """
    Ask for a workflow graph that fulfils a free-form request.

    The reply is a JSON object with ``description``, ``nodes`` and ``edges``
    in the workflow file layout.
    """
    kinds = ", ".join(kind.value for kind in NodeKind)
    prompt = (
        "You design node-graph workflows for an AI image studio. "
        f'User request: "{text}".\n'
        f"Available node types: {kinds}.\n"
        f"Edges into a node use targetHandle '{PROMPT_PORT}' for text and "
        f"'{IMAGE_PORT}' for images. E-commerce nodes also accept "
        f"'{MODEL_PORT}' and '{GARMENT_PORT}'.\n"
        "Return a JSON object with 'description' (one sentence), 'nodes' "
        "(each with id, type, position {x, y} and data) and 'edges' (each "
        "with id, source, target and targetHandle). Put the text of prompt "
        "nodes in data.text."
    )
    return GenerationRequest(
        prompt=prompt,
        images=[image] if image else [],
        output=OutputFormat.JSON,
    )
