"""
Node Data - Per-kind data records carried by graph nodes.

Every node carries a NodeData variant chosen by its kind. All variants share
a common envelope (disabled/is_loading/error) and the media fields the
resolution engine reads from any node (text, image, uploaded_image,
reference_images, sketch). Variants add only the settings their kind uses.

The serialized form keeps the camelCase keys used by saved workflows
(``uploadedImage``, ``referenceImages``, ``isLoading``...). Keys a variant
does not declare are kept in ``extra`` so foreign data survives a round trip.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, ClassVar


class NodeKind(str, Enum):
    """Kinds of node that can appear in a workflow graph."""
    PROMPT = "prompt"
    GENERATE = "generate"
    EDIT = "edit"
    ENHANCE = "enhance"
    INPAINT = "inpaint"
    VIDEO = "video"
    IMAGE_TO_TEXT = "image_to_text"
    OUTPAINT = "outpaint"
    COMPRESSION = "compression"
    DRAW = "draw"
    CHARACTER_EDIT = "character_edit"
    POSE = "pose"
    ECOMMERCE = "ecommerce"
    NOTE = "note"
    COMPARE = "compare"

    @property
    def produces_text(self) -> bool:
        return self in TEXT_PRODUCERS


TEXT_PRODUCERS = frozenset({NodeKind.PROMPT, NodeKind.IMAGE_TO_TEXT})

# Keys that describe an in-progress run and are never restored from disk
TRANSIENT_KEYS = ("isLoading", "isAnalyzing", "error")


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


@dataclass
class NodeData:
    """Common envelope and media fields shared by every node kind."""

    kind: ClassVar[NodeKind | None] = None

    disabled: bool = False
    is_loading: bool = False
    error: str | None = None

    text: str | None = None
    image: str | None = None
    uploaded_image: str | None = None
    reference_images: list[str] | None = None
    sketch: str | None = None
    gallery: list[str] | None = None
    aspect_ratio: str | None = None

    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def _field_keys(cls) -> dict[str, str]:
        """Map serialized key -> attribute name."""
        return {_camel(f.name): f.name for f in fields(cls) if f.name != "extra"}

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> NodeData:
        """
        Build a record from serialized node data.

        Function-valued entries (handlers attached by a UI layer) are
        dropped; unknown keys go to ``extra``.
        """
        keys = cls._field_keys()
        values: dict[str, Any] = {}
        extra: dict[str, Any] = {}
        for key, value in (raw or {}).items():
            if callable(value):
                continue
            if key in keys:
                values[keys[key]] = copy.deepcopy(value)
            else:
                extra[key] = copy.deepcopy(value)
        return cls(**values, extra=extra)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to plain JSON-compatible data, omitting unset fields."""
        out: dict[str, Any] = copy.deepcopy(self.extra)
        for f in fields(self):
            if f.name == "extra":
                continue
            value = getattr(self, f.name)
            if value is None:
                continue
            if f.name in ("disabled", "is_loading", "is_analyzing") and value is False:
                continue
            out[_camel(f.name)] = copy.deepcopy(value)
        return out

    def apply(self, patch: dict[str, Any]) -> None:
        """
        Apply a partial update keyed by attribute name.

        Raises:
            AttributeError: If the patch names a field this kind lacks.
        """
        names = {f.name for f in fields(self)}
        for name in patch:
            if name not in names:
                raise AttributeError(
                    f"{type(self).__name__} has no field {name!r}"
                )
        for name, value in patch.items():
            setattr(self, name, value)

    def clear_run_state(self) -> None:
        """Reset transient flags left over from an interrupted run."""
        self.is_loading = False
        self.error = None


@dataclass
class PromptData(NodeData):
    kind: ClassVar[NodeKind | None] = NodeKind.PROMPT
    style: str | None = None


@dataclass
class GenerateData(NodeData):
    kind: ClassVar[NodeKind | None] = NodeKind.GENERATE


@dataclass
class EditData(NodeData):
    kind: ClassVar[NodeKind | None] = NodeKind.EDIT


@dataclass
class EnhanceData(NodeData):
    kind: ClassVar[NodeKind | None] = NodeKind.ENHANCE


@dataclass
class InpaintData(NodeData):
    kind: ClassVar[NodeKind | None] = NodeKind.INPAINT
    mask: str | None = None


@dataclass
class OutpaintData(NodeData):
    kind: ClassVar[NodeKind | None] = NodeKind.OUTPAINT
    direction: str | None = None


@dataclass
class ImageToTextData(NodeData):
    kind: ClassVar[NodeKind | None] = NodeKind.IMAGE_TO_TEXT


@dataclass
class DrawData(NodeData):
    kind: ClassVar[NodeKind | None] = NodeKind.DRAW
    stroke_layer: str | None = None


@dataclass
class CharacterEditData(NodeData):
    kind: ClassVar[NodeKind | None] = NodeKind.CHARACTER_EDIT
    character_attributes: dict[str, Any] | None = None
    is_analyzing: bool = False

    def clear_run_state(self) -> None:
        super().clear_run_state()
        self.is_analyzing = False


@dataclass
class PoseData(NodeData):
    kind: ClassVar[NodeKind | None] = NodeKind.POSE
    pose_landmarks: list[dict[str, Any]] | None = None
    pose_skeleton_image: str | None = None
    pose_description: str | None = None
    pose_reference_image: str | None = None
    pose_control_mode: str | None = None  # "skeleton" | "text"
    is_analyzing: bool = False

    def clear_run_state(self) -> None:
        super().clear_run_state()
        self.is_analyzing = False


@dataclass
class EcommerceData(NodeData):
    kind: ClassVar[NodeKind | None] = NodeKind.ECOMMERCE
    ecommerce_mode: str | None = None  # "model" | "extract" | "try_on" | "ref_extract"
    ecommerce_attributes: dict[str, Any] | None = None
    ecommerce_garment_image: str | None = None


@dataclass
class VideoData(NodeData):
    kind: ClassVar[NodeKind | None] = NodeKind.VIDEO
    video: str | None = None
    video_type: str | None = None  # "veo" | "sequence"
    sprite_sheets: list[str] | None = None
    frame_count: int | None = None
    frame_offsets: dict[str, dict[str, float]] | None = None


@dataclass
class CompressionData(NodeData):
    kind: ClassVar[NodeKind | None] = NodeKind.COMPRESSION
    compression_format: str | None = None
    compression_quality: float | None = None
    compression_scale: float | None = None
    original_size: str | None = None
    compressed_size: str | None = None


@dataclass
class NoteData(NodeData):
    kind: ClassVar[NodeKind | None] = NodeKind.NOTE


@dataclass
class CompareData(NodeData):
    kind: ClassVar[NodeKind | None] = NodeKind.COMPARE


DATA_TYPES: dict[NodeKind, type[NodeData]] = {
    cls.kind: cls
    for cls in (
        PromptData,
        GenerateData,
        EditData,
        EnhanceData,
        InpaintData,
        OutpaintData,
        ImageToTextData,
        DrawData,
        CharacterEditData,
        PoseData,
        EcommerceData,
        VideoData,
        CompressionData,
        NoteData,
        CompareData,
    )
}


def data_type_for(kind: NodeKind) -> type[NodeData]:
    """Get the data record class for a node kind."""
    return DATA_TYPES.get(kind, NodeData)
